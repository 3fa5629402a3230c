# -*- coding: utf-8 -*-
"""SMTP MTA Strict Transport Security (MTA-STS) validation"""

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
    MTA_STS_MIN_MAX_AGE,
    SYNTAX_ERROR_MARKER,
    USER_AGENT,
)
from mailvet.utils import (
    WSP_REGEX,
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


MTA_STS_VERSION_REGEX_STRING = rf"v{WSP_REGEX}*={WSP_REGEX}*STSv1{WSP_REGEX}*;"
MTA_STS_TAG_VALUE_REGEX_STRING = rf"([a-z]{{1,2}}){WSP_REGEX}*={WSP_REGEX}*([a-z0-9]+)"

MTA_STS_MX_REGEX_STRING = r"^[a-z0-9\-*.]+$"
MTA_STS_MX_REGEX = re.compile(MTA_STS_MX_REGEX_STRING, re.IGNORECASE)

MTA_STS_MODES = ["enforce", "testing", "none"]
MTA_STS_MAX_MAX_AGE = 31557600


class MTASTSError(Exception):
    """Raised when a fatal MTA-STS error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class MTASTSRecordSyntaxError(MTASTSError):
    """Raised when an MTA-STS DNS record syntax error is found"""


class MTASTSPolicyError(MTASTSError):
    """Raised when the MTA-STS policy cannot be obtained or parsed"""


class MTASTSPolicyDownloadError(MTASTSPolicyError):
    """Raised when the MTA-STS policy cannot be downloaded

    ``reason`` is one of ``timeout``, ``network``, or ``http_error``
    """

    def __init__(self, msg: str, *, reason: str, status: Optional[int] = None):
        self.reason = reason
        self.status = status
        MTASTSPolicyError.__init__(self, msg, data={"reason": reason, "status": status})


class MTASTSPolicySyntaxError(MTASTSPolicyError):
    """Raised when the MTA-STS policy cannot be parsed"""

    reason = "parse_error"


class ParsedMTASTSPolicy(TypedDict):
    version: Optional[str]
    mode: Optional[str]
    mx: list[str]
    max_age: Optional[int]


class MTASTSPolicyParsingResults(TypedDict):
    policy: ParsedMTASTSPolicy
    warnings: list[str]


class DownloadedMTASTSPolicy(TypedDict):
    policy: str
    warnings: list[str]


class _MTASTSResultOptionalFields(TypedDict, total=False):
    dns_record: str
    version: Optional[str]
    id: Optional[str]
    policy: Optional[ParsedMTASTSPolicy]


class MTASTSResult(_MTASTSResultOptionalFields):
    found: bool
    issues: list[Issue]


class _STSGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for MTA-STS records"""

    version_tag = pyleri.Regex(MTA_STS_VERSION_REGEX_STRING, re.IGNORECASE)
    tag_value = pyleri.Regex(MTA_STS_TAG_VALUE_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(
        version_tag,
        pyleri.List(
            tag_value, delimiter=pyleri.Regex(f"{WSP_REGEX}*;{WSP_REGEX}*"), opt=True
        ),
    )


def check_mta_sts_record_syntax(
    record: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> None:
    """
    Checks the syntax of an MTA-STS DNS record

    Args:
        record (str): A MTA-STS record
        syntax_error_marker (str): The maker for pointing out syntax errors

    Raises:
        :exc:`mailvet.mta_sts.MTASTSRecordSyntaxError`
    """
    parsed_record = _STSGrammar().parse(record)
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
        raise MTASTSRecordSyntaxError(
            f"Expected {expecting} "
            f"at position {parsed_record.pos} "
            f"(marked with {syntax_error_marker}) "
            f"in: {marked_record}"
        )


async def query_mta_sts_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS for MTA-STS records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for a record from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The records at ``_mta-sts.<domain>`` that start with ``v=STSv1``

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    target = f"_mta-sts.{domain}"
    logging.debug(f"Checking for an MTA-STS record on {domain}")
    records = await resolve_txt(
        target,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    return [r.strip() for r in records if r.strip().lower().startswith("v=stsv1")]


async def _download_mta_sts_policy(
    url: str, client: httpx.AsyncClient, http_timeout: float
) -> DownloadedMTASTSPolicy:
    warnings = []
    expected_content_type = "text/plain"
    headers = {"User-Agent": USER_AGENT}
    logging.debug(f"Attempting to download MTA-STS policy from {url}")
    try:
        response = await client.get(url, headers=headers, timeout=http_timeout)
        response.raise_for_status()
    except httpx.TimeoutException:
        raise MTASTSPolicyDownloadError("Request timed out", reason="timeout")
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise MTASTSPolicyDownloadError(
            f"HTTP {status}", reason="http_error", status=status
        )
    except httpx.HTTPError as e:
        raise MTASTSPolicyDownloadError(str(e) or type(e).__name__, reason="network")

    if "Content-Type" in response.headers:
        content_type = response.headers["Content-Type"].split(";")[0]
        content_type = content_type.strip()
        if content_type != expected_content_type:
            warnings.append(
                f"Content-Type header should be "
                f"{expected_content_type} not {content_type}"
            )
    else:
        warnings.append(
            "The Content-Type header is missing. It should "
            f"be set to {expected_content_type}"
        )

    results: DownloadedMTASTSPolicy = {"policy": response.text, "warnings": warnings}
    return results


async def download_mta_sts_policy(
    domain: str,
    *,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
) -> DownloadedMTASTSPolicy:
    """
    Downloads a domain's MTA-STS policy

    Redirects are not followed (RFC 8461, § 3.3).

    Args:
        domain (str): A domain name
        http_timeout (float): HTTP timeout in seconds
        client (httpx.AsyncClient): An HTTP client to use

    Returns:
        dict: a ``dict`` with the following keys:
                     - ``policy`` - The unparsed policy string
                     - ``warnings`` - A list of any warning conditions found

    Raises:
        :exc:`mailvet.mta_sts.MTASTSPolicyDownloadError`
    """
    url = f"https://mta-sts.{domain}/.well-known/mta-sts.txt"
    if client is None:
        async with httpx.AsyncClient(
            timeout=http_timeout, follow_redirects=False
        ) as client:
            return await _download_mta_sts_policy(url, client, http_timeout)
    return await _download_mta_sts_policy(url, client, http_timeout)


def parse_mta_sts_policy(policy: str) -> MTASTSPolicyParsingResults:
    """
    Parses an MTA-STS policy

    Lines that cannot be parsed are reported as warnings and skipped.

    Args:
        policy (str): The policy

     Returns:
        dict: a ``dict`` with the following keys:
                     - ``policy`` - The parsed policy
                     - ``warnings`` - A list of any warning conditions found

    Raises:
        :exc:`mailvet.mta_sts.MTASTSPolicySyntaxError`
    """
    parsed_policy: ParsedMTASTSPolicy = {
        "version": None,
        "mode": None,
        "mx": [],
        "max_age": None,
    }
    warnings = []
    seen_keys = []
    lines = policy.replace("\r\n", "\n").split("\n")
    for i in range(len(lines)):
        line = i + 1
        text = lines[i].strip()
        if text == "" or text.startswith("#"):
            continue
        key, separator, value = text.partition(":")
        if separator == "":
            warnings.append(f"Line {line}: Not a key: value pair.")
            continue
        key = key.strip().lower()
        value = value.strip()
        if key in seen_keys and key != "mx":
            warnings.append(f"Line {line}: Duplicate key: {key}")
            continue
        seen_keys.append(key)
        if key == "version":
            if value != "STSv1":
                warnings.append(f"Line {line}: Invalid version: {value}")
            parsed_policy["version"] = value
        elif key == "mode":
            if value.lower() not in MTA_STS_MODES:
                warnings.append(f"Line {line}: Invalid mode: {value}")
            else:
                parsed_policy["mode"] = value.lower()
        elif key == "max_age":
            error_msg = (
                f"Line {line}: max_age must be an integer value between 0 and "
                f"{MTA_STS_MAX_MAX_AGE}."
            )
            try:
                max_age = int(value)
            except ValueError:
                warnings.append(error_msg)
                continue
            if max_age < 0 or max_age > MTA_STS_MAX_MAX_AGE:
                warnings.append(error_msg)
            parsed_policy["max_age"] = max_age
        elif key == "mx":
            if MTA_STS_MX_REGEX.match(value) is None:
                warnings.append(f"Line {line}: Invalid mx value: {value}")
                continue
            parsed_policy["mx"].append(value.lower())
        else:
            warnings.append(f"Line {line}: Unexpected key: {key}")

    if len(seen_keys) == 0:
        raise MTASTSPolicySyntaxError(
            "The policy does not contain any key: value pairs"
        )
    for required_key in ["version", "mode", "max_age"]:
        if required_key not in seen_keys:
            warnings.append(f"Missing required key: {required_key}.")

    results: MTASTSPolicyParsingResults = {
        "policy": parsed_policy,
        "warnings": warnings,
    }
    return results


def mx_in_mta_sts_patterns(mx_hostname: str, mta_sts_mx_patterns: list[str]) -> bool:
    """
    Tests is a given MX hostname is covered by a given list of MX patterns
    from an MTA-STS policy

    A pattern matches a hostname exactly, or as ``*.suffix``, which matches
    any hostname that ends in ``.suffix``. Case and trailing dots are
    ignored.

    Args:
        mx_hostname (str): The MX hostname to test
        mta_sts_mx_patterns (list): The list of MTA-STS MX patterns

    Returns: True if the MX hostname is included, false if not
    """
    mx_hostname = mx_hostname.lower().rstrip(".")
    for pattern in mta_sts_mx_patterns:
        pattern = pattern.lower().rstrip(".")
        if pattern.startswith("*."):
            if mx_hostname.endswith(pattern[1:]):
                return True
        elif pattern == mx_hostname:
            return True
    return False


def _policy_error_issue(
    error: MTASTSPolicyError, domain: str, http_timeout: float
) -> Issue:
    policy_url = f"https://mta-sts.{domain}/.well-known/mta-sts.txt"
    if isinstance(error, MTASTSPolicyDownloadError):
        if error.status == 404:
            return make_issue(
                "high",
                "MTA-STS policy file not found (404)",
                f"Create policy file at {policy_url}",
            )
        if error.reason == "timeout":
            return make_issue(
                "high",
                "MTA-STS policy fetch timed out",
                "Ensure the policy endpoint responds within "
                f"{http_timeout:g} seconds",
            )
        if error.reason == "network":
            return make_issue(
                "high",
                f"Could not connect to MTA-STS policy endpoint: {error}",
                f"Ensure https://mta-sts.{domain} is accessible and has valid TLS",
            )
        return make_issue(
            "high",
            f"MTA-STS policy fetch failed: {error}",
            f"Ensure {policy_url} is accessible",
        )
    return make_issue(
        "high",
        f"MTA-STS policy could not be parsed: {error}",
        f"Ensure {policy_url} is a plain text MTA-STS policy",
    )


def _policy_issues(policy: ParsedMTASTSPolicy) -> list[Issue]:
    issues = []
    if policy["mode"] == "none":
        issues.append(
            make_issue(
                "high",
                'MTA-STS policy mode is "none" - no protection',
                'Change mode to "testing" or "enforce"',
            )
        )
    elif policy["mode"] == "testing":
        issues.append(
            make_issue(
                "low",
                "MTA-STS policy in testing mode",
                'Consider switching to "enforce" mode after validation',
            )
        )
    if policy["max_age"] is not None and policy["max_age"] < MTA_STS_MIN_MAX_AGE:
        issues.append(
            make_issue(
                "medium",
                f"MTA-STS max_age is very short ({policy['max_age']}s)",
                "Consider increasing max_age to at least 1 week (604800)",
            )
        )
    if len(policy["mx"]) == 0:
        issues.append(
            make_issue(
                "high",
                "MTA-STS policy has no MX hosts defined",
                "Add mx: lines matching your MX records",
            )
        )
    return issues


async def check_mta_sts(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> MTASTSResult:
    """
    Checks the MTA-STS DNS record and policy of a domain

    Coverage of the domain's MX hosts by the policy is checked by the
    caller, which has the MX result.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        http_timeout (float): HTTP timeout in seconds

    Returns:
        dict: a ``dict`` with the following keys:

                       - ``found`` - ``True`` if an MTA-STS record was found
                       - ``dns_record`` - The MTA-STS DNS record
                       - ``version`` - The ``v`` tag
                       - ``id`` - The ``id`` tag
                       - ``policy`` - The parsed MTA-STS policy, if it could
                         be downloaded
                       - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    issues = []
    records = await query_mta_sts_record(
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
                    "medium",
                    "No MTA-STS DNS record found",
                    "Add MTA-STS to enforce TLS for incoming email",
                )
            ],
        }
    if len(records) > 1:
        issues.append(
            make_issue(
                "medium",
                f"Multiple MTA-STS records found ({len(records)})",
                "Only one MTA-STS record should exist",
            )
        )

    dns_record = records[0]
    try:
        check_mta_sts_record_syntax(dns_record)
    except MTASTSRecordSyntaxError as e:
        issues.append(
            make_issue(
                "medium",
                f"MTA-STS record syntax error: {e}",
                "Use the format v=STSv1; id=<policy id>",
            )
        )
    version = extract_tag(dns_record, "v")
    id_value = extract_tag(dns_record, "id")
    if not id_value:
        issues.append(
            make_issue(
                "high",
                "MTA-STS record missing id tag",
                "Add id= tag to enable policy updates",
            )
        )

    policy = None
    try:
        downloaded_policy = await download_mta_sts_policy(
            domain, http_timeout=http_timeout
        )
        parsed_policy = parse_mta_sts_policy(downloaded_policy["policy"])
        policy = parsed_policy["policy"]
        warnings = downloaded_policy["warnings"] + parsed_policy["warnings"]
        for warning in warnings:
            issues.append(make_issue("low", f"MTA-STS policy: {warning}"))
        issues += _policy_issues(policy)
    except MTASTSPolicyError as e:
        logging.debug(f"MTA-STS policy error for {domain}: {e}")
        issues.append(_policy_error_issue(e, domain, http_timeout))

    results: MTASTSResult = {
        "found": True,
        "dns_record": dns_record,
        "version": version,
        "id": id_value,
        "policy": policy,
        "issues": issues,
    }
    return results
