# -*- coding: utf-8 -*-
"""SMTP TLS Reporting"""

from __future__ import annotations

import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

from dns.nameserver import Nameserver
import httpx
import pyleri

from mailvet._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_HTTP_TIMEOUT,
    SYNTAX_ERROR_MARKER,
    USER_AGENT,
)
from mailvet.utils import (
    DNSException,
    WSP_REGEX,
    Issue,
    extract_tag,
    is_valid_url,
    make_issue,
    normalize_domain,
    parse_mailto_uri,
    parse_record_tags,
    resolve_mx,
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

SMTPTLSREPORTING_VERSION_REGEX_STRING = (
    rf"v{WSP_REGEX}*=" rf"{WSP_REGEX}*TLSRPTv1{WSP_REGEX}*;"
)
SMTPTLSREPORTING_TAG_VALUE_REGEX_STRING = (
    rf"([a-z]{{1,3}}){WSP_REGEX}*={WSP_REGEX}*" rf"([^\s;]+)"
)

# 2xx and 3xx, plus endpoints that only accept a POST of a report
ACCEPTABLE_ENDPOINT_STATUS_CODES = [400, 405]


class SMTPTLSReportingError(Exception):
    """Raised when a fatal SMTP TLS Reporting error occurs"""


class SMTPTLSReportingSyntaxError(SMTPTLSReportingError):
    """Raised when an SMTP TLS Reporting syntax error is found"""


class _SMTPTLSReportingGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SMTP TLS Reporting records"""

    version_tag = pyleri.Regex(SMTPTLSREPORTING_VERSION_REGEX_STRING)
    tag_value = pyleri.Regex(SMTPTLSREPORTING_TAG_VALUE_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(
        version_tag,
        pyleri.List(
            tag_value, delimiter=pyleri.Regex(f"{WSP_REGEX}*;{WSP_REGEX}*"), opt=True
        ),
    )


class _EndpointStatusOptionalFields(TypedDict, total=False):
    reachable: bool
    error: str


class EndpointStatus(_EndpointStatusOptionalFields):
    endpoint: str
    type: str


class _TLSRPTResultOptionalFields(TypedDict, total=False):
    record: str
    version: Optional[str]
    rua: list[str]
    endpoint_status: Optional[list[EndpointStatus]]


class TLSRPTResult(_TLSRPTResultOptionalFields):
    found: bool
    issues: list[Issue]


def check_smtp_tls_reporting_record_syntax(
    record: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> None:
    """
    Checks the syntax of an SMTP TLS Reporting record

    Args:
        record (str): A SMTP TLS Reporting record
        syntax_error_marker (str): The maker for pointing out syntax errors

    Raises:
        :exc:`mailvet.smtp_tls_reporting.SMTPTLSReportingSyntaxError`
    """
    parsed_record = _SMTPTLSReportingGrammar().parse(record)
    if not parsed_record.is_valid:
        expecting = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        marked_record = (
            record[: parsed_record.pos]
            + syntax_error_marker
            + record[parsed_record.pos :]
        )
        expecting = " or ".join(expecting)
        raise SMTPTLSReportingSyntaxError(
            f"Expected {expecting} "
            f"at position {parsed_record.pos} "
            f"(marked with"
            f" {syntax_error_marker}) "
            f"in: {marked_record}"
        )


async def query_smtp_tls_reporting_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS for SMTP TLS Reporting records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for a record from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The records at ``_smtp._tls.<domain>`` that start with
        ``v=TLSRPT``

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    target = f"_smtp._tls.{domain}"
    logging.debug(f"Checking for a SMTP TLS Reporting record on {domain}")
    records = await resolve_txt(
        target,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    return [r.strip() for r in records if r.strip().lower().startswith("v=tlsrpt")]


async def verify_https_endpoint(
    url: str,
    *,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
) -> EndpointStatus:
    """
    Checks that an HTTPS reporting endpoint responds to a ``HEAD`` request

    Args:
        url (str): The endpoint URL
        http_timeout (float): HTTP timeout in seconds
        client (httpx.AsyncClient): An HTTP client to use

    Returns:
        dict: The endpoint status
    """
    if client is None:
        async with httpx.AsyncClient(
            timeout=http_timeout, follow_redirects=True
        ) as client:
            return await verify_https_endpoint(
                url, http_timeout=http_timeout, client=client
            )
    logging.debug(f"Checking SMTP TLS reporting endpoint {url}")
    status: EndpointStatus = {"endpoint": url, "type": "https"}
    try:
        response = await client.head(
            url, headers={"User-Agent": USER_AGENT}, timeout=http_timeout
        )
    except httpx.TimeoutException:
        status["reachable"] = False
        status["error"] = "Timeout"
        return status
    except httpx.ConnectError as e:
        status["reachable"] = False
        status["error"] = f"Connection failed: {e}"
        return status
    except httpx.HTTPError as e:
        status["reachable"] = False
        status["error"] = str(e) or type(e).__name__
        return status
    code = response.status_code
    reachable = 200 <= code < 400 or code in ACCEPTABLE_ENDPOINT_STATUS_CODES
    status["reachable"] = reachable
    if not reachable:
        status["error"] = f"HTTP {code}"
    return status


async def _verify_mailto_endpoint(
    uri: str,
    email_address: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> EndpointStatus:
    email_domain = email_address.split("@")[-1]
    status: EndpointStatus = {"endpoint": uri, "type": "mailto"}
    try:
        hosts = await resolve_mx(
            email_domain,
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except DNSException as e:
        status["reachable"] = False
        status["error"] = f"MX lookup failed: {e}"
        return status
    if len(hosts) == 0 or hosts[0]["exchange"] == "":
        status["reachable"] = False
        status["error"] = "No MX records"
        return status
    status["reachable"] = True
    return status


async def check_smtp_tls_reporting(
    domain: str,
    *,
    verify_endpoints: bool = False,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> TLSRPTResult:
    """
    Checks the SMTP TLS Reporting record of a domain

    Args:
        domain (str): A domain name
        verify_endpoints (bool): Check that ``mailto`` domains have MX
                                 records and that ``https`` endpoints respond
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        http_timeout (float): HTTP timeout in seconds

    Returns:
        dict: a ``dict`` with the following keys:

                       - ``found`` - ``True`` if a record was found
                       - ``record`` - The SMTP TLS Reporting record
                       - ``version`` - The ``v`` tag
                       - ``rua`` - The reporting URIs
                       - ``endpoint_status`` - The status of each reporting
                         URI, or ``None``
                       - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    issues = []
    records = await query_smtp_tls_reporting_record(
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
                    "low",
                    "No TLS-RPT record found",
                    "Add TLS-RPT to receive reports about TLS connection failures",
                )
            ],
        }
    if len(records) > 1:
        issues.append(
            make_issue(
                "medium",
                f"Multiple TLS-RPT records found ({len(records)})",
                "Only one TLS-RPT record should exist",
            )
        )

    record = records[0]
    try:
        check_smtp_tls_reporting_record_syntax(record)
    except SMTPTLSReportingSyntaxError as e:
        issues.append(
            make_issue(
                "medium",
                f"TLS-RPT record syntax error: {e}",
                "Use the format v=TLSRPTv1; rua=<URI>[,<URI>]",
            )
        )
    version = extract_tag(record, "v")
    rua = split_uris(parse_record_tags(record).get("rua"))
    endpoint_status = []

    if len(rua) == 0:
        issues.append(
            make_issue(
                "high",
                "TLS-RPT record has no reporting addresses (rua=)",
                "Add rua= tag with mailto: or https: reporting endpoints",
            )
        )

    for uri in rua:
        if uri.lower().startswith("mailto:"):
            email_address = parse_mailto_uri(uri)
            if email_address is None:
                issues.append(
                    make_issue(
                        "medium",
                        f"Invalid email in TLS-RPT reporting address: {uri}",
                        "Use a valid email address format",
                    )
                )
                endpoint_status.append(
                    {
                        "endpoint": uri,
                        "type": "mailto",
                        "reachable": False,
                        "error": "Invalid email format",
                    }
                )
            elif verify_endpoints:
                status = await _verify_mailto_endpoint(
                    uri,
                    email_address,
                    nameservers=nameservers,
                    timeout=timeout,
                    timeout_retries=timeout_retries,
                )
                endpoint_status.append(status)
                if not status["reachable"]:
                    email_domain = email_address.split("@")[-1]
                    issues.append(
                        make_issue(
                            "low",
                            f'TLS-RPT reporting email domain "{email_domain}" '
                            f"cannot receive reports: {status['error']}",
                            "Verify the email address can receive reports",
                        )
                    )
            else:
                endpoint_status.append({"endpoint": uri, "type": "mailto"})
        elif uri.lower().startswith("https://"):
            if not is_valid_url(uri, require_https=True):
                issues.append(
                    make_issue(
                        "medium",
                        f"Invalid HTTPS URL in TLS-RPT: {uri}",
                        "Use a valid HTTPS URL",
                    )
                )
                endpoint_status.append(
                    {
                        "endpoint": uri,
                        "type": "https",
                        "reachable": False,
                        "error": "Invalid URL",
                    }
                )
            elif verify_endpoints:
                status = await verify_https_endpoint(uri, http_timeout=http_timeout)
                endpoint_status.append(status)
                if not status["reachable"]:
                    issues.append(
                        make_issue(
                            "medium",
                            f"TLS-RPT HTTPS endpoint unreachable: {uri}",
                            "Verify the endpoint is accessible: "
                            f"{status.get('error', 'unknown error')}",
                        )
                    )
            else:
                endpoint_status.append({"endpoint": uri, "type": "https"})
        else:
            issues.append(
                make_issue(
                    "medium",
                    f"Invalid TLS-RPT reporting address: {uri}",
                    "Use mailto: or https: scheme for reporting addresses",
                )
            )

    results: TLSRPTResult = {
        "found": True,
        "record": record,
        "version": version,
        "rua": rua,
        "endpoint_status": endpoint_status if len(endpoint_status) > 0 else None,
        "issues": issues,
    }
    return results
