# -*- coding: utf-8 -*-
"""Brand Indicators for Message Identification (BIMI) record validation"""

from __future__ import annotations

import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

from dns.nameserver import Nameserver

from mailvet._constants import DEFAULT_DNS_TIMEOUT
from mailvet.utils import (
    Issue,
    extract_tag,
    make_issue,
    normalize_domain,
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

BIMI_VERSION_REGEX = re.compile(r"^v\s*=\s*BIMI", re.IGNORECASE)


class _BIMIResultOptionalFields(TypedDict, total=False):
    selector: str
    record: str
    version: Optional[str]
    logo_url: Optional[str]
    certificate_url: Optional[str]


class BIMIResult(_BIMIResultOptionalFields):
    found: bool
    issues: list[Issue]


async def query_bimi_record(
    domain: str,
    *,
    selector: str = "default",
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS for BIMI records

    Args:
        domain (str): A domain name
        selector (str): The BIMI selector
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The BIMI records at ``<selector>._bimi.<domain>``

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    target = f"{selector}._bimi.{domain}"
    logging.debug(f"Checking for a BIMI record at {target}")
    records = await resolve_txt(
        target,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    return [r.strip() for r in records if BIMI_VERSION_REGEX.match(r.strip())]


def _check_logo_url(logo_url: Optional[str]) -> Optional[Issue]:
    if not logo_url:
        return make_issue(
            "high",
            "BIMI record missing logo URL (l=)",
            "Add l= tag with URL to your SVG logo",
        )
    if not logo_url.lower().startswith("https://"):
        return make_issue(
            "high",
            "BIMI logo URL must use HTTPS",
            "Update logo URL to use HTTPS",
        )
    if not logo_url.lower().endswith(".svg"):
        return make_issue(
            "medium",
            "BIMI logo should be SVG Tiny PS format",
            "Use SVG Tiny PS format for maximum compatibility",
        )
    return None


async def check_bimi(
    domain: str,
    *,
    selector: str = "default",
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> BIMIResult:
    """
    Checks the BIMI record of a domain

    The DMARC prerequisites of BIMI are checked by the caller, which has
    the DMARC result.

    Args:
        domain (str): A domain name
        selector (str): The BIMI selector
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - ``True`` if a BIMI record was found
                     - ``selector`` - The BIMI selector
                     - ``record`` - The BIMI record
                     - ``version`` - The ``v`` tag
                     - ``logo_url`` - The ``l`` tag
                     - ``certificate_url`` - The ``a`` tag (VMC)
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    issues = []
    records = await query_bimi_record(
        domain,
        selector=selector,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    if len(records) == 0:
        return {
            "found": False,
            "selector": selector,
            "issues": [
                make_issue(
                    "info",
                    "No BIMI record found",
                    "Consider adding BIMI to display your brand logo in email "
                    "clients",
                )
            ],
        }
    if len(records) > 1:
        issues.append(
            make_issue(
                "medium",
                f"Multiple BIMI records found ({len(records)})",
                "Only one BIMI record should exist",
            )
        )

    record = records[0]
    version = extract_tag(record, "v")
    logo_url = extract_tag(record, "l")
    certificate_url = extract_tag(record, "a")

    if not version:
        issues.append(
            make_issue(
                "high",
                "BIMI record missing version tag (v=)",
                "Add v=BIMI1 at the start of the BIMI record",
            )
        )
    elif version.upper() != "BIMI1":
        issues.append(
            make_issue(
                "medium",
                f'Unexpected BIMI version: "{version}" (expected BIMI1)',
                "Use v=BIMI1 for the version tag",
            )
        )

    logo_issue = _check_logo_url(logo_url)
    if logo_issue is not None:
        issues.append(logo_issue)

    if not certificate_url:
        issues.append(
            make_issue(
                "low",
                "No VMC (Verified Mark Certificate) specified",
                "Consider obtaining a VMC for broader email client support",
            )
        )
    elif not certificate_url.lower().startswith("https://"):
        issues.append(
            make_issue(
                "medium",
                "BIMI certificate URL (a=) must use HTTPS",
                "Update the certificate URL to use HTTPS",
            )
        )

    results: BIMIResult = {
        "found": True,
        "selector": selector,
        "record": record,
        "version": version,
        "logo_url": logo_url,
        "certificate_url": certificate_url,
        "issues": issues,
    }
    return results
