# -*- coding: utf-8 -*-
"""DomainKeys Identified Mail (DKIM) key discovery and validation"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from dns.nameserver import Nameserver

from mailvet._constants import (
    COMMON_DKIM_SELECTORS,
    DEFAULT_DNS_TIMEOUT,
    DKIM_STRONG_KEY_BITS,
    DKIM_WEAK_KEY_BITS,
)
from mailvet.utils import (
    DNSException,
    Issue,
    make_issue,
    normalize_domain,
    parse_record_tags,
    resolve_txt,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

DKIM_VERSION_REGEX = re.compile(r"(^|;)\s*v\s*=\s*dkim1", re.IGNORECASE)
DKIM_KEY_TYPES = ["rsa", "ed25519"]
ED25519_KEY_BITS = 256


class _DKIMSelectorOptionalFields(TypedDict, total=False):
    key_type: Optional[str]
    key_length: Optional[int]
    record: str


class DKIMSelector(_DKIMSelectorOptionalFields):
    selector: str
    found: bool


class _DKIMResultOptionalFields(TypedDict, total=False):
    selectors: list[DKIMSelector]


class DKIMResult(_DKIMResultOptionalFields):
    found: bool
    issues: list[Issue]


def has_strong_dkim_key(results: DKIMResult) -> bool:
    """Checks if any selector has an ed25519 key or an RSA key of 2048+ bits"""
    for selector in results.get("selectors", []):
        if selector.get("key_type") == "ed25519":
            return True
        if (selector.get("key_length") or 0) >= DKIM_STRONG_KEY_BITS:
            return True
    return False


def find_dkim_record(records: list[str]) -> Optional[str]:
    """
    Finds the DKIM key record among the TXT records of a selector

    Records with an explicit ``v=DKIM1`` tag are preferred. Otherwise, the
    first record with a ``p`` tag and a supported (or absent) ``k`` tag is
    returned.

    Args:
        records (list): TXT records

    Returns:
        str: A DKIM record, or ``None``
    """
    for record in records:
        if DKIM_VERSION_REGEX.search(record.strip()):
            return record
    for record in records:
        tags = parse_record_tags(record)
        if "p" not in tags:
            continue
        key_type = tags.get("k")
        if key_type and key_type.lower() not in DKIM_KEY_TYPES:
            continue
        return record
    return None


def get_dkim_key_length(public_key: str, key_type: str = "rsa") -> Optional[int]:
    """
    Returns the size of a DKIM public key in bits

    Args:
        public_key (str): The base64 encoded value of the ``p`` tag
        key_type (str): The value of the ``k`` tag

    Returns:
        int: The key size, ``0`` for a revoked (empty) key, or ``None`` if
        the key could not be parsed
    """
    public_key = re.sub(r"\s", "", public_key)
    if public_key == "":
        return 0
    if key_type == "ed25519":
        return ED25519_KEY_BITS
    try:
        der = base64.b64decode(public_key, validate=True)
        key = serialization.load_der_public_key(der)
    except (binascii.Error, ValueError, UnsupportedAlgorithm) as e:
        logging.debug(f"Unable to parse DKIM public key: {e}")
        return None
    if isinstance(key, rsa.RSAPublicKey):
        return key.key_size
    if isinstance(key, ed25519.Ed25519PublicKey):
        return ED25519_KEY_BITS
    return None


async def check_dkim_selector(
    domain: str,
    selector: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> DKIMSelector:
    """
    Looks up and parses the DKIM key of a single selector

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    target = f"{selector}._domainkey.{domain}"
    logging.debug(f"Checking for a DKIM record at {target}")
    records = await resolve_txt(
        target,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    record = find_dkim_record(records)
    if record is None:
        return {"selector": selector, "found": False}
    tags = parse_record_tags(record)
    key_type = tags.get("k", "rsa").lower()
    key_length = None
    if "p" in tags:
        key_length = get_dkim_key_length(tags["p"], key_type)
    return {
        "selector": selector,
        "found": True,
        "key_type": key_type,
        "key_length": key_length,
        "record": record,
    }


async def check_dkim(
    domain: str,
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> DKIMResult:
    """
    Checks a domain for DKIM keys published under common selectors

    All selectors are queried concurrently. A selector whose lookup fails is
    treated as absent, unless every lookup fails.

    Args:
        domain (str): A domain name
        selectors (list): The selectors to try
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - ``True`` if at least one key was found
                     - ``selectors`` - The selectors that have a key
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    if selectors is None:
        selectors = COMMON_DKIM_SELECTORS
    selectors = list(dict.fromkeys(selectors))
    issues = []
    results = await asyncio.gather(
        *[
            check_dkim_selector(
                domain,
                selector,
                nameservers=nameservers,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
            for selector in selectors
        ],
        return_exceptions=True,
    )
    found_selectors = []
    errors = []
    for selector, result in zip(selectors, results):
        if isinstance(result, DNSException):
            logging.debug(f"DKIM lookup for selector {selector} failed: {result}")
            errors.append(result)
        elif isinstance(result, BaseException):
            raise result
        elif result["found"]:
            found_selectors.append(result)

    if len(errors) > 0 and len(errors) == len(selectors):
        raise errors[0]

    if len(found_selectors) == 0:
        issues.append(
            make_issue(
                "high",
                "No DKIM records found for common selectors",
                "Configure DKIM signing for your email service",
            )
        )
        return {"found": False, "selectors": [], "issues": issues}

    for selector in found_selectors:
        name = selector["selector"]
        key_length = selector.get("key_length")
        if key_length == 0:
            issues.append(
                make_issue(
                    "critical",
                    f'DKIM selector "{name}" has a revoked key (p= is empty)',
                    "Generate and publish a new DKIM key pair for this "
                    "selector, or remove the selector if no longer in use",
                )
            )
        elif key_length is None:
            issues.append(
                make_issue(
                    "high",
                    f'DKIM selector "{name}" has missing or invalid public key (p=)',
                    "Ensure the DKIM record contains a valid base64-encoded "
                    "public key",
                )
            )
        elif selector.get("key_type") == "ed25519":
            continue
        elif key_length < DKIM_WEAK_KEY_BITS:
            issues.append(
                make_issue(
                    "critical",
                    f'DKIM selector "{name}" uses weak RSA key ({key_length}-bit)',
                    f"Upgrade to at least {DKIM_STRONG_KEY_BITS}-bit RSA key "
                    "or use ed25519",
                )
            )
        elif key_length < DKIM_STRONG_KEY_BITS:
            issues.append(
                make_issue(
                    "medium",
                    f'DKIM selector "{name}" uses {key_length}-bit RSA key',
                    f"Consider upgrading to {DKIM_STRONG_KEY_BITS}-bit RSA key "
                    "or ed25519",
                )
            )

    return {"found": True, "selectors": found_selectors, "issues": issues}
