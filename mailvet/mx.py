# -*- coding: utf-8 -*-
"""Mail Exchange (MX) record checks"""

from __future__ import annotations

import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

from dns.nameserver import Nameserver

from mailvet._constants import DEFAULT_DNS_TIMEOUT, EMAIL_PROVIDERS
from mailvet.utils import Issue, MXRecord, make_issue, normalize_domain, resolve_mx

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

EMAIL_PROVIDER_REGEXES = [
    (re.compile(pattern, re.IGNORECASE), name) for pattern, name in EMAIL_PROVIDERS
]


class _MXResultOptionalFields(TypedDict, total=False):
    provider: Optional[str]


class MXResult(_MXResultOptionalFields):
    found: bool
    records: list[MXRecord]
    issues: list[Issue]


def identify_email_provider(records: list[MXRecord]) -> Optional[str]:
    """
    Identifies a hosted email provider from MX hostnames

    Args:
        records (list): MX records

    Returns:
        str: The name of the provider, or ``None``
    """
    exchanges = [record["exchange"].lower() for record in records]
    for regex, name in EMAIL_PROVIDER_REGEXES:
        for exchange in exchanges:
            if regex.search(exchange):
                return name
    return None


async def check_mx(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> MXResult:
    """
    Checks the MX records of a domain

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - ``True`` if MX records exist
                     - ``records`` - A list of ``exchange`` and ``priority``
                       dicts, sorted by priority
                     - ``provider`` - The detected email provider, or ``None``
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking MX records on {domain}")
    records = await resolve_mx(
        domain,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    if len(records) == 0:
        return {
            "found": False,
            "records": [],
            "provider": None,
            "issues": [
                make_issue(
                    "info",
                    "No MX records found",
                    "Add MX records if this domain should receive email",
                )
            ],
        }

    issues = []
    # RFC 7505
    if any(record["exchange"] in ("", ".") for record in records):
        issues.append(
            make_issue(
                "info",
                "Null MX record (RFC 7505) - domain does not accept email",
                "This is an intentional configuration to reject email",
            )
        )
        return {"found": True, "records": records, "provider": None, "issues": issues}

    if len(records) == 1:
        issues.append(
            make_issue(
                "low",
                "Only one MX record - no redundancy",
                "Consider adding backup MX servers",
            )
        )
    else:
        priorities = {record["priority"] for record in records}
        if len(priorities) == 1:
            issues.append(
                make_issue(
                    "info",
                    "All MX records have same priority - round-robin delivery",
                    "Consider different priorities for primary/backup servers",
                )
            )

    provider = identify_email_provider(records)
    if provider is not None:
        issues.append(make_issue("info", f"Email provider detected: {provider}"))

    return {"found": True, "records": records, "provider": provider, "issues": issues}
