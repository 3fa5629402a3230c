# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record evaluation"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

import pyleri
from dns.nameserver import Nameserver

from mailvet._constants import (
    DEFAULT_DNS_TIMEOUT,
    SPF_LOOKUP_WARNING_THRESHOLD,
    SPF_MAX_DNS_LOOKUPS,
    SPF_MAX_RECORD_BYTES,
    SPF_MAX_RECURSION_DEPTH,
    SYNTAX_ERROR_MARKER,
)
from mailvet.utils import (
    DNSException,
    Issue,
    make_issue,
    normalize_domain,
    resolve_txt,
)

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

SPF_VERSION_TAG_REGEX_STRING = "v=spf1"

SPF_MECHANISM_REGEX_STRING = (
    r"([+\-~?])?"
    r"(mx:?|ip4:?|ip6:?|exists:?|include:?|all|a:?|redirect=|exp=|ptr:?)"
    r"([\w+/_.:\-{}%]*)"
)
AFTER_ALL_REGEX_STRING = r"(?:^|\s)[+\-~?]?all\s+(.+)"

SPF_VERSION_TAG_REGEX = re.compile(
    rf"^{SPF_VERSION_TAG_REGEX_STRING}(\s|$)", re.IGNORECASE
)
SPF_MECHANISM_REGEX = re.compile(SPF_MECHANISM_REGEX_STRING, re.IGNORECASE)
AFTER_ALL_REGEX = re.compile(AFTER_ALL_REGEX_STRING, re.IGNORECASE)

# An 'all' mechanism glued to the previous term, e.g. "ip4:203.0.113.7~all"
CONCATENATED_ALL_REGEX = re.compile(r"\S([+\-~?])all(?=\s|$)", re.IGNORECASE)

DNS_LOOKUP_MECHANISMS = ["a", "mx", "ptr", "exists"]


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFSyntaxError(SPFError):
    """Raised when an SPF syntax error is found"""


class _SPFGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF records"""

    version_tag = pyleri.Regex(SPF_VERSION_TAG_REGEX_STRING)
    mechanism = pyleri.Regex(SPF_MECHANISM_REGEX_STRING, re.IGNORECASE)

    # Pyleri skips whitespace by default, so whitespace separation between
    # terms is checked in Python before the grammar runs
    START = pyleri.Sequence(version_tag, pyleri.Repeat(mechanism))


class SPFTerm(TypedDict):
    qualifier: str
    mechanism: str
    value: str


class SPFLookupResult(TypedDict):
    count: int
    loop_detected: bool
    depth_limit_reached: bool
    failed_includes: list[str]
    failed_redirects: list[str]


class _SPFResultOptionalFields(TypedDict, total=False):
    record: Optional[str]
    mechanism: Optional[str]
    lookup_count: int
    includes: list[str]
    loop_detected: bool
    depth_limit_reached: bool
    failed_includes: list[str]
    failed_redirects: list[str]


class SPFResult(_SPFResultOptionalFields):
    found: bool
    issues: list[Issue]


def _empty_lookup_result() -> SPFLookupResult:
    return {
        "count": 0,
        "loop_detected": False,
        "depth_limit_reached": False,
        "failed_includes": [],
        "failed_redirects": [],
    }


def _merge_lookup_results(target: SPFLookupResult, source: SPFLookupResult):
    target["count"] += source["count"]
    target["loop_detected"] = target["loop_detected"] or source["loop_detected"]
    target["depth_limit_reached"] = (
        target["depth_limit_reached"] or source["depth_limit_reached"]
    )
    target["failed_includes"] += source["failed_includes"]
    target["failed_redirects"] += source["failed_redirects"]


def _record_key(domain: str, record: str) -> tuple[str, str]:
    record_hash = hashlib.sha256(record.encode("utf-8")).hexdigest()[:16]
    return domain.lower(), record_hash


def check_spf_syntax(
    domain: str, record: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> None:
    """
    Checks the syntax of an SPF record up to its ``all`` mechanism

    Args:
        domain (str): The domain that published the record
        record (str): An SPF record
        syntax_error_marker (str): The character used to mark the position
                                   of a syntax error

    Raises:
        :exc:`mailvet.spf.SPFSyntaxError`
    """
    m = CONCATENATED_ALL_REGEX.search(record)
    if m:
        pos = m.start(1)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise SPFSyntaxError(
            f"{domain}: Expected whitespace before 'all' at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    # Text after "all" is reported separately
    grammar_record = record
    after_all_match = AFTER_ALL_REGEX.search(record)
    if after_all_match:
        grammar_record = record[: after_all_match.start(1)].rstrip()

    parsed_record = _SPFGrammar().parse(grammar_record)
    if not parsed_record.is_valid:
        pos = parsed_record.pos
        expecting: list[str] = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        expecting_str = " or ".join(expecting)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise SPFSyntaxError(
            f"{domain}: Expected {expecting_str} at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )


def parse_spf_terms(record: str) -> list[SPFTerm]:
    """
    Splits an SPF record into its mechanisms and modifiers

    Terms that are not recognized are skipped.

    Args:
        record (str): An SPF record

    Returns:
        list: A list of ``dicts`` with ``qualifier``, ``mechanism`` and
        ``value`` keys
    """
    terms = []
    for term in record.split()[1:]:
        match = SPF_MECHANISM_REGEX.fullmatch(term)
        if match is None:
            logging.debug(f"Skipping unrecognized SPF term: {term}")
            continue
        qualifier, mechanism, value = match.groups()
        terms.append(
            {
                "qualifier": qualifier or "",
                "mechanism": mechanism.lower().strip(":="),
                "value": value,
            }
        )
    return terms


def get_all_mechanism(record: str) -> Optional[str]:
    """
    Returns the ``all`` mechanism of an SPF record with its qualifier

    Args:
        record (str): An SPF record

    Returns:
        str: One of ``+all``, ``-all``, ``~all`` or ``?all``, or ``None``
        if the record has no ``all`` mechanism. A bare ``all`` is ``+all``.
    """
    for term in parse_spf_terms(record):
        if term["mechanism"] == "all":
            return f"{term['qualifier'] or '+'}all"
    return None


def get_spf_includes(record: str) -> list[str]:
    """Returns the targets of the ``include`` mechanisms of an SPF record"""
    return [t["value"] for t in parse_spf_terms(record) if t["mechanism"] == "include"]


async def query_spf_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS for SPF records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The TXT records at the domain that start with ``v=spf1``

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    logging.debug(f"Checking for a SPF record on {domain}")
    records = await resolve_txt(
        domain,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    return [r.strip() for r in records if SPF_VERSION_TAG_REGEX.match(r.strip())]


async def count_dns_lookups(
    domain: str,
    record: str,
    visited: set[tuple[str, str]],
    depth: int = 0,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> SPFLookupResult:
    """
    Recursively counts the DNS lookups an SPF record requires
    (RFC 7208, § 4.6.4)

    Each ``a``, ``mx``, ``ptr``, ``exists``, ``include`` and ``redirect``
    term costs one lookup. The records of ``include`` and ``redirect``
    targets are resolved and counted recursively.

    ``visited`` holds a ``(domain, record hash)`` key for every record
    already evaluated in this traversal, including records reached through
    sibling includes. A record that is reached again is reported as a loop
    and is not counted twice. The same domain may reappear with a different
    record without being treated as a loop.

    Args:
        domain (str): The domain that published the record
        record (str): The SPF record
        visited (set): Keys of the records already evaluated, updated in
                       place
        depth (int): The current recursion depth
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``count`` - The number of DNS lookups
                     - ``loop_detected`` - A record includes itself
                     - ``depth_limit_reached`` - Recursion was cut off
                     - ``failed_includes`` - Include targets without SPF
                     - ``failed_redirects`` - Redirect targets without SPF
    """
    results = _empty_lookup_result()
    if depth > SPF_MAX_RECURSION_DEPTH:
        logging.debug(f"SPF recursion depth limit reached at {domain}")
        results["depth_limit_reached"] = True
        return results

    key = _record_key(domain, record)
    if key in visited:
        logging.debug(f"SPF loop detected at {domain}")
        results["loop_detected"] = True
        return results
    visited.add(key)

    terms = parse_spf_terms(record)
    redirect = None
    for term in terms:
        mechanism = term["mechanism"]
        if mechanism in DNS_LOOKUP_MECHANISMS:
            results["count"] += 1
        elif mechanism == "include":
            results["count"] += 1
            nested = await _count_target_lookups(
                term["value"],
                visited,
                depth,
                nameservers=nameservers,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
            if nested is None:
                results["failed_includes"].append(term["value"])
            else:
                _merge_lookup_results(results, nested)
        elif mechanism == "redirect" and redirect is None:
            redirect = term["value"]

    if redirect is not None:
        results["count"] += 1
        nested = await _count_target_lookups(
            redirect,
            visited,
            depth,
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        if nested is None:
            results["failed_redirects"].append(redirect)
        else:
            _merge_lookup_results(results, nested)

    return results


async def _count_target_lookups(
    target: str,
    visited: set[tuple[str, str]],
    depth: int,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> Optional[SPFLookupResult]:
    if "%" in target:
        # Macros need the SMTP session to expand
        logging.debug(f"Not resolving SPF macro target {target}")
        return _empty_lookup_result()
    try:
        records = await query_spf_record(
            target,
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except DNSException as e:
        logging.debug(f"Failed to resolve the SPF record at {target}: {e}")
        return None
    if len(records) == 0:
        return None
    return await count_dns_lookups(
        normalize_domain(target),
        records[0],
        visited,
        depth + 1,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )


def _spf_record_not_found() -> SPFResult:
    return {
        "found": False,
        "issues": [
            make_issue(
                "critical",
                "No SPF record found",
                "Add an SPF record to prevent email spoofing",
            )
        ],
    }


async def check_spf(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> SPFResult:
    """
    Evaluates the SPF record of a domain

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - ``True`` if an SPF record was found
                     - ``record`` - The SPF record
                     - ``mechanism`` - The ``all`` mechanism, e.g. ``-all``
                     - ``lookup_count`` - DNS lookups needed to evaluate it
                     - ``includes`` - The ``include`` targets
                     - ``loop_detected`` - The include graph has a cycle
                     - ``depth_limit_reached`` - The include graph is too deep
                     - ``failed_includes`` - Include targets without SPF
                     - ``failed_redirects`` - Redirect targets without SPF
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    issues = []
    spf_records = await query_spf_record(
        domain,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    if len(spf_records) == 0:
        return _spf_record_not_found()
    if len(spf_records) > 1:
        issues.append(
            make_issue(
                "high",
                f"Multiple SPF records found ({len(spf_records)})",
                "Only one SPF record should exist per domain",
            )
        )

    record = spf_records[0]
    logging.debug(f"Evaluating the SPF record on {domain}")

    try:
        check_spf_syntax(domain, record)
    except SPFSyntaxError as e:
        issues.append(
            make_issue(
                "medium",
                f"SPF record syntax error: {e}",
                "Fix the SPF record syntax so that receivers can parse it",
            )
        )
    items_after_all = AFTER_ALL_REGEX.findall(record)
    if len(items_after_all) > 0 and not items_after_all[0].lower().startswith("exp="):
        issues.append(
            make_issue(
                "low",
                "Any text after the all mechanism other than an exp modifier "
                "is ignored",
                "Remove the text after the all mechanism",
            )
        )
    if len(record.encode("utf-8")) > SPF_MAX_RECORD_BYTES:
        issues.append(
            make_issue(
                "low",
                f"SPF record is larger than {SPF_MAX_RECORD_BYTES} bytes",
                "Shorten the SPF record so that DNS answers fit in a single "
                "UDP packet",
            )
        )

    mechanism = get_all_mechanism(record)
    includes = get_spf_includes(record)
    lookup_results = await count_dns_lookups(
        domain,
        record,
        set(),
        0,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    lookup_count = lookup_results["count"]

    if lookup_results["loop_detected"]:
        issues.append(
            make_issue(
                "high",
                "SPF record contains circular reference",
                "Remove circular include/redirect references",
            )
        )
    if lookup_results["depth_limit_reached"]:
        issues.append(
            make_issue(
                "high",
                "SPF record analysis exceeded recursion depth limit",
                "Simplify include/redirect chains to avoid excessive nesting",
            )
        )
    failed_includes = list(dict.fromkeys(lookup_results["failed_includes"]))
    for failed_include in failed_includes:
        issues.append(
            make_issue(
                "high",
                f"SPF include target not found: {failed_include}",
                "Ensure the include domain publishes a valid SPF record",
            )
        )
    failed_redirects = list(dict.fromkeys(lookup_results["failed_redirects"]))
    for failed_redirect in failed_redirects:
        issues.append(
            make_issue(
                "high",
                f"SPF redirect target not found: {failed_redirect}",
                "Ensure the redirect domain publishes a valid SPF record",
            )
        )

    if mechanism == "+all":
        issues.append(
            make_issue(
                "critical",
                "SPF uses +all (pass all) - effectively no protection",
                "Change to -all (hardfail) for maximum protection",
            )
        )
    elif mechanism == "?all":
        issues.append(
            make_issue(
                "high",
                "SPF uses ?all (neutral) - weak protection",
                "Change to -all (hardfail) for maximum protection",
            )
        )
    elif mechanism == "~all":
        issues.append(
            make_issue(
                "medium",
                "SPF uses ~all (softfail) - consider using hardfail",
                "Change to -all (hardfail) when ready for stricter enforcement",
            )
        )
    elif mechanism is None:
        issues.append(
            make_issue(
                "high",
                "SPF record has no all mechanism",
                "Add -all at the end of your SPF record",
            )
        )

    if lookup_count > SPF_MAX_DNS_LOOKUPS:
        issues.append(
            make_issue(
                "high",
                f"SPF record exceeds DNS lookup limit "
                f"({lookup_count}/{SPF_MAX_DNS_LOOKUPS})",
                "Reduce the number of include/redirect mechanisms or flatten "
                "the SPF record",
            )
        )
    elif lookup_count > SPF_LOOKUP_WARNING_THRESHOLD:
        issues.append(
            make_issue(
                "medium",
                f"SPF record is close to DNS lookup limit "
                f"({lookup_count}/{SPF_MAX_DNS_LOOKUPS})",
                "Consider flattening SPF record to avoid future issues",
            )
        )

    if any(t["mechanism"] == "ptr" for t in parse_spf_terms(record)):
        issues.append(
            make_issue(
                "medium",
                "SPF record uses deprecated ptr mechanism",
                "Replace ptr with explicit IP ranges or include statements",
            )
        )

    results: SPFResult = {
        "found": True,
        "record": record,
        "mechanism": mechanism,
        "lookup_count": lookup_count,
        "includes": includes,
        "loop_detected": lookup_results["loop_detected"],
        "depth_limit_reached": lookup_results["depth_limit_reached"],
        "failed_includes": failed_includes,
        "failed_redirects": failed_redirects,
        "issues": issues,
    }
    return results
