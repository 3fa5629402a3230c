# -*- coding: utf-8 -*-
"""Domain-based Message Authentication, Reporting, and Conformance (DMARC)
record validation"""

from __future__ import annotations

import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

from dns.nameserver import Nameserver

from mailvet._constants import DEFAULT_DNS_TIMEOUT
from mailvet.utils import (
    DNSException,
    Issue,
    get_base_domain,
    make_issue,
    normalize_domain,
    parse_mailto_uri,
    resolve_txt,
    split_uris,
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

DMARC_VERSION_REGEX = re.compile(r"^v\s*=\s*DMARC1(\s|;|$)", re.IGNORECASE)
DMARC_TAG_REGEX = re.compile(r"^([a-zA-Z0-9]+)\s*=\s*(.*)$")

VALID_DMARC_TAGS = [
    "v",
    "p",
    "sp",
    "rua",
    "ruf",
    "adkim",
    "aspf",
    "fo",
    "rf",
    "ri",
    "pct",
]
DMARC_POLICIES = ["none", "quarantine", "reject"]
DMARC_ALIGNMENT_MODES = ["r", "s"]


class _DMARCResultOptionalFields(TypedDict, total=False):
    record: str
    location: str
    policy: Optional[str]
    subdomain_policy: Optional[str]
    reporting_enabled: bool
    rua: list[str]
    ruf: list[str]
    pct: Optional[int]


class DMARCResult(_DMARCResultOptionalFields):
    found: bool
    issues: list[Issue]


class ParsedDMARCTags(TypedDict):
    tags: dict[str, str]
    unknown_tags: list[str]
    malformed_tags: list[str]


def _filter_dmarc_records(records: list[str]) -> list[str]:
    return [r.strip() for r in records if DMARC_VERSION_REGEX.match(r.strip())]


def parse_dmarc_tags(record: str) -> ParsedDMARCTags:
    """
    Parses the tags of a DMARC record

    Whitespace around ``=`` and ``;`` and the case of tag names are
    ignored.

    Args:
        record (str): A DMARC record

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``tags`` - Known tag values by lowercase tag name
                     - ``unknown_tags`` - Names of unknown tags
                     - ``malformed_tags`` - Parts that contain ``=`` but are
                       not ``tag=value`` pairs
    """
    tags = {}
    unknown_tags = []
    malformed_tags = []
    for part in re.split(r"\s*;\s*", record):
        part = part.strip()
        if not part:
            continue
        match = DMARC_TAG_REGEX.match(part)
        if match:
            tag, value = match.groups()
            if tag.lower() in VALID_DMARC_TAGS:
                tags[tag.lower()] = value.strip()
            else:
                unknown_tags.append(tag)
        elif "=" in part:
            malformed_tags.append(part)
    return {
        "tags": tags,
        "unknown_tags": unknown_tags,
        "malformed_tags": malformed_tags,
    }


async def query_dmarc_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> tuple[list[str], str]:
    """
    Queries DNS for a DMARC record, falling back to the organizational
    (base) domain if the domain itself has none

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        tuple: The DMARC records found, and the domain they were found on

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    target = f"_dmarc.{domain}"
    logging.debug(f"Checking for a DMARC record on {domain}")
    records = await resolve_txt(
        target,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    records = _filter_dmarc_records(records)
    base_domain = get_base_domain(domain)
    if len(records) == 0 and domain != base_domain:
        logging.debug(f"Checking for a DMARC record on {base_domain}")
        records = await resolve_txt(
            f"_dmarc.{base_domain}",
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        records = _filter_dmarc_records(records)
        if len(records) > 0:
            return records, base_domain
    return records, domain


async def verify_dmarc_report_destination(
    source_domain: str,
    destination_domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> bool:
    """
    Checks if the report destination accepts reports for the source domain
    per RFC 7489, § 7.1, either with a record for the source domain or with
    a wildcard record, e.g.:

    ::

      example.com._report._dmarc.example.net IN TXT "v=DMARC1"
      *._report._dmarc.example.net IN TXT "v=DMARC1"

    Args:
        source_domain (str): The source domain
        destination_domain (str): The destination domain
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        bool: ``True`` if the destination accepts the reports
    """
    source_domain = source_domain.lower()
    destination_domain = destination_domain.lower()
    if get_base_domain(source_domain) == get_base_domain(destination_domain):
        return True
    targets = [
        f"{source_domain}._report._dmarc.{destination_domain}",
        f"*._report._dmarc.{destination_domain}",
    ]
    for target in targets:
        try:
            records = await resolve_txt(
                target,
                nameservers=nameservers,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
        except DNSException as e:
            logging.debug(f"DMARC report authorization lookup failed: {e}")
            continue
        if len(_filter_dmarc_records(records)) > 0:
            return True
    return False


async def check_dmarc(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> DMARCResult:
    """
    Checks the DMARC record of a domain

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - ``True`` if a DMARC record was found
                     - ``record`` - The DMARC record
                     - ``location`` - The domain the record was found on
                     - ``policy`` - The ``p`` tag, if valid
                     - ``subdomain_policy`` - The ``sp`` tag, if valid
                     - ``reporting_enabled`` - ``rua`` or ``ruf`` is set
                     - ``rua`` - Aggregate report URIs
                     - ``ruf`` - Forensic report URIs
                     - ``pct`` - The ``pct`` tag, if valid
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    issues = []
    records, location = await query_dmarc_record(
        domain,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    if len(records) == 0:
        return {
            "found": False,
            "issues": [
                make_issue(
                    "critical",
                    "No DMARC record found",
                    "Add a DMARC record to specify email authentication policy",
                )
            ],
        }
    if len(records) > 1:
        issues.append(
            make_issue(
                "high",
                f"Multiple DMARC records found ({len(records)})",
                "Only one DMARC record should exist",
            )
        )

    record = records[0]
    parsed = parse_dmarc_tags(record)
    tags = parsed["tags"]
    if len(parsed["unknown_tags"]) > 0:
        issues.append(
            make_issue(
                "low",
                f"Unknown DMARC tags found: {', '.join(parsed['unknown_tags'])}",
                "Remove or correct invalid tags to ensure proper parsing",
            )
        )
    if len(parsed["malformed_tags"]) > 0:
        issues.append(
            make_issue(
                "medium",
                f"Malformed DMARC tags: {', '.join(parsed['malformed_tags'])}",
                "Fix tag formatting (should be tag=value)",
            )
        )

    version = tags.get("v")
    if not version:
        issues.append(
            make_issue(
                "critical",
                "DMARC record missing version tag (v=DMARC1)",
                "Add v=DMARC1 at the start of the DMARC record",
            )
        )
    elif version.upper() != "DMARC1":
        issues.append(
            make_issue(
                "high",
                f'Invalid DMARC version: "{version}" (expected DMARC1)',
                "Use v=DMARC1 for the version tag",
            )
        )

    policy = tags.get("p")
    if policy is not None:
        policy = policy.lower()
    subdomain_policy = tags.get("sp")
    if subdomain_policy is not None:
        subdomain_policy = subdomain_policy.lower()
    rua = split_uris(tags.get("rua"))
    ruf = split_uris(tags.get("ruf"))

    if not policy:
        issues.append(
            make_issue(
                "critical",
                "DMARC record has no policy (p=) specified",
                "Add a policy: p=reject for maximum protection",
            )
        )
    elif policy not in DMARC_POLICIES:
        issues.append(
            make_issue(
                "critical",
                f'Invalid DMARC policy value: "{policy}"',
                "Use p=none, p=quarantine, or p=reject",
            )
        )
    elif policy == "none":
        issues.append(
            make_issue(
                "high",
                'DMARC policy is "none" - no enforcement',
                "Change to p=quarantine or p=reject after monitoring",
            )
        )
    elif policy == "quarantine":
        issues.append(
            make_issue(
                "medium",
                'DMARC policy is "quarantine" - consider upgrading',
                "Change to p=reject for maximum protection when ready",
            )
        )

    if subdomain_policy and subdomain_policy not in DMARC_POLICIES:
        issues.append(
            make_issue(
                "medium",
                f'Invalid subdomain policy value: "{subdomain_policy}"',
                "Use sp=none, sp=quarantine, or sp=reject",
            )
        )
    elif policy == "reject" and subdomain_policy and subdomain_policy != "reject":
        issues.append(
            make_issue(
                "medium",
                f"Subdomain policy (sp={subdomain_policy}) is weaker than main policy",
                "Consider setting sp=reject as well",
            )
        )

    reporting_enabled = len(rua) > 0 or len(ruf) > 0
    if not reporting_enabled:
        issues.append(
            make_issue(
                "medium",
                "No DMARC reporting configured",
                "Add rua= to receive aggregate reports",
            )
        )

    destinations = []
    for uri in rua + ruf:
        lowered_uri = uri.lower()
        if not lowered_uri.startswith("mailto:") and not lowered_uri.startswith(
            "https://"
        ):
            issues.append(
                make_issue(
                    "medium",
                    f'Invalid reporting address format: "{uri}"',
                    "Reporting addresses should use mailto: or https: scheme",
                )
            )
            continue
        email_address = parse_mailto_uri(uri)
        if email_address is not None:
            destination = email_address.split("@")[-1].lower()
            if destination not in destinations:
                destinations.append(destination)

    for destination in destinations:
        accepted = await verify_dmarc_report_destination(
            location,
            destination,
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        if not accepted:
            authorization_target = f"{location}._report._dmarc.{destination}"
            issues.append(
                make_issue(
                    "high",
                    f"{destination} does not indicate that it accepts DMARC "
                    f"reports about {location}",
                    f'Publish "v=DMARC1" in a TXT record at {authorization_target}',
                )
            )

    pct = None
    if "pct" in tags:
        try:
            pct = int(tags["pct"])
        except ValueError:
            pct = None
        if pct is None or pct < 0 or pct > 100:
            pct = None
            issues.append(
                make_issue(
                    "medium",
                    "Invalid pct value: must be 0-100",
                    "Set pct to a value between 0 and 100",
                )
            )
        elif pct < 100:
            issues.append(
                make_issue(
                    "low",
                    f"DMARC policy applies to only {pct}% of messages",
                    "Consider increasing pct to 100 after testing",
                )
            )

    for tag, name in [("adkim", "DKIM"), ("aspf", "SPF")]:
        value = tags.get(tag)
        if value and value.lower() not in DMARC_ALIGNMENT_MODES:
            issues.append(
                make_issue(
                    "low",
                    f'Invalid {tag} value: "{value}" (should be r or s)',
                    f"Use {tag}=r (relaxed) or {tag}=s (strict) {name} alignment",
                )
            )

    results: DMARCResult = {
        "found": True,
        "record": record,
        "location": location,
        "policy": policy if policy in DMARC_POLICIES else None,
        "subdomain_policy": (
            subdomain_policy if subdomain_policy in DMARC_POLICIES else None
        ),
        "reporting_enabled": reporting_enabled,
        "rua": rua,
        "ruf": ruf,
        "pct": pct,
        "issues": issues,
    }
    return results
