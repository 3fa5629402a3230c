# -*- coding: utf-8 -*-
"""Audits the email authentication posture of domains"""

from __future__ import annotations

import asyncio
import json
import logging
from csv import DictWriter
from datetime import datetime, timezone
from io import StringIO
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

from dns.nameserver import Nameserver

import mailvet._constants
from mailvet._constants import (
    CHECK_NAMES,
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_CONCURRENCY,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_HTTP_TIMEOUT,
)
from mailvet.arc import ARCReadinessResult, check_arc_readiness
from mailvet.bimi import BIMIResult, check_bimi
from mailvet.dkim import DKIMResult, check_dkim
from mailvet.dmarc import DMARCResult, check_dmarc
from mailvet.dnssec import DNSSECResult, check_dnssec
from mailvet.mta_sts import MTASTSResult, check_mta_sts, mx_in_mta_sts_patterns
from mailvet.mx import MXResult, check_mx
from mailvet.scoring import calculate_grade, generate_recommendations
from mailvet.smtp_tls_reporting import TLSRPTResult, check_smtp_tls_reporting
from mailvet.spf import SPFResult, check_spf
from mailvet.utils import DNS_CACHE, is_valid_domain, make_issue, normalize_domain

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


__version__ = mailvet._constants.__version__

CORE_CHECKS = ["spf", "dkim", "dmarc", "mx"]
CHECK_LABELS = {
    "spf": "SPF",
    "dkim": "DKIM",
    "dmarc": "DMARC",
    "mx": "MX",
    "bimi": "BIMI",
    "mta_sts": "MTA-STS",
    "tls_rpt": "TLS-RPT",
    "arc": "ARC",
    "dnssec": "DNSSEC",
}


class CheckTimeout(Exception):
    """Raised when a check does not finish within the check timeout"""


class _DomainResultOptionalFields(TypedDict, total=False):
    error: str


class DomainResult(_DomainResultOptionalFields):
    domain: str
    grade: str
    score: int
    timestamp: str
    spf: SPFResult
    dkim: DKIMResult
    dmarc: DMARCResult
    mx: MXResult
    bimi: Optional[BIMIResult]
    mta_sts: Optional[MTASTSResult]
    tls_rpt: Optional[TLSRPTResult]
    arc: Optional[ARCReadinessResult]
    dnssec: Optional[DNSSECResult]
    recommendations: list[str]


def normalize_check_name(name: str) -> str:
    """Converts a check name like ``MTA-STS`` to its key, e.g. ``mta_sts``"""
    name = name.strip().lower().replace("-", "_")
    if name in ("mtasts", "tlsrpt"):
        name = f"{name[:-3]}_{name[-3:]}"
    return name


def get_enabled_checks(
    checks: Optional[Sequence[str]] = None,
    skip_checks: Optional[Sequence[str]] = None,
) -> list[str]:
    """
    Works out which checks to run

    Args:
        checks (list): Only run these checks
        skip_checks (list): Do not run these checks

    Returns:
        list: The names of the checks to run

    Raises:
        :exc:`ValueError`
    """
    enabled = list(CHECK_NAMES)
    if checks is not None:
        checks = [normalize_check_name(check) for check in checks]
        enabled = [check for check in CHECK_NAMES if check in checks]
    else:
        checks = []
    if skip_checks is not None:
        skip_checks = [normalize_check_name(check) for check in skip_checks]
        enabled = [check for check in enabled if check not in skip_checks]
    else:
        skip_checks = []
    unknown = [c for c in list(checks) + list(skip_checks) if c not in CHECK_NAMES]
    if len(unknown) > 0:
        raise ValueError(
            f"Unknown check(s): {', '.join(unknown)}. "
            f"Available checks: {', '.join(CHECK_NAMES)}"
        )
    return enabled


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _empty_result(name: str) -> dict:
    result = {"found": False, "issues": []}
    if name == "dkim":
        result["selectors"] = []
    elif name == "mx":
        result["records"] = []
    return result


def _failed_result(name: str, reason: str) -> dict:
    result = _empty_result(name)
    result["issues"] = [
        make_issue(
            "high",
            f"{CHECK_LABELS[name]} check failed: {reason}",
            "Check DNS configuration and try again",
        )
    ]
    if name == "dnssec":
        result["enabled"] = False
    return result


def _error_reason(error: BaseException) -> str:
    reason = str(error)
    if reason == "":
        reason = type(error).__name__
    return reason


async def _run_check(name: str, coroutine, timeout: float):
    logging.debug(f"Starting the {CHECK_LABELS[name]} check")
    try:
        return await asyncio.wait_for(coroutine, timeout)
    except asyncio.TimeoutError:
        raise CheckTimeout(f"timed out after {timeout:g} seconds")


def _check_bimi_prerequisites(bimi: BIMIResult, dmarc: DMARCResult) -> None:
    if not bimi["found"]:
        return
    if not dmarc["found"]:
        bimi["issues"].append(
            make_issue(
                "high",
                "BIMI requires DMARC to be configured",
                "Add a DMARC record with p=quarantine or p=reject",
            )
        )
    elif dmarc.get("policy") in (None, "none"):
        bimi["issues"].append(
            make_issue(
                "high",
                "BIMI requires DMARC policy of quarantine or reject",
                "Upgrade DMARC policy from none to quarantine or reject",
            )
        )


def _check_mta_sts_mx_coverage(mta_sts: MTASTSResult, mx: MXResult) -> None:
    policy = mta_sts.get("policy")
    if not mta_sts["found"] or not policy or not mx["found"]:
        return
    patterns = policy.get("mx", [])
    if len(patterns) == 0:
        return
    for record in mx["records"]:
        hostname = record["exchange"].lower().rstrip(".")
        if hostname == "":
            continue
        if not mx_in_mta_sts_patterns(hostname, patterns):
            mta_sts["issues"].append(
                make_issue(
                    "high",
                    f'MX host "{hostname}" not covered by MTA-STS policy',
                    f'Add "mx: {hostname}" or appropriate wildcard to MTA-STS '
                    "policy",
                )
            )


def _invalid_domain_result(domain: str) -> DomainResult:
    return {
        "domain": domain,
        "grade": "F",
        "score": 0,
        "timestamp": _timestamp(),
        "spf": _empty_result("spf"),
        "dkim": _empty_result("dkim"),
        "dmarc": _empty_result("dmarc"),
        "mx": _empty_result("mx"),
        "bimi": None,
        "mta_sts": None,
        "tls_rpt": None,
        "arc": None,
        "dnssec": None,
        "recommendations": [],
        "error": f'Invalid domain format: "{domain}"',
    }


async def analyze_domain(
    domain: str,
    *,
    checks: Optional[Sequence[str]] = None,
    skip_checks: Optional[Sequence[str]] = None,
    dkim_selectors: Optional[Sequence[str]] = None,
    bimi_selector: str = "default",
    verify_tls_rpt_endpoints: bool = False,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
    dns_timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> DomainResult:
    """
    Runs every enabled check on a domain concurrently, and grades the results

    A check that fails or does not finish within ``timeout`` seconds is
    reported as a high severity issue on its own result, and never prevents
    the other checks from completing.

    Args:
        domain (str): A domain name
        checks (list): Only run these checks
        skip_checks (list): Do not run these checks
        dkim_selectors (list): The DKIM selectors to try
        bimi_selector (str): The BIMI selector to check
        verify_tls_rpt_endpoints (bool): Check that TLS-RPT reporting
                                         endpoints are reachable
        nameservers (list): A list of nameservers to query
        timeout (float): number of seconds each check may take
        dns_timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        http_timeout (float): HTTP timeout in seconds

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``domain`` - The normalized domain name
                     - ``grade`` - A letter grade from ``A`` to ``F``
                     - ``score`` - A score from 0 to 100
                     - ``timestamp`` - When the analysis finished
                     - ``spf``, ``dkim``, ``dmarc``, ``mx`` - Check results
                     - ``bimi``, ``mta_sts``, ``tls_rpt``, ``arc``,
                       ``dnssec`` - Check results, or ``None`` if the
                       check was disabled
                     - ``recommendations`` - A list of recommendations,
                       most important first
                     - ``error`` - Errors of the checks that failed, if any

    Raises:
        :exc:`ValueError`
    """
    enabled = get_enabled_checks(checks, skip_checks)
    domain = normalize_domain(domain)
    if not is_valid_domain(domain):
        logging.debug(f"Invalid domain: {domain}")
        return _invalid_domain_result(domain)
    if not dkim_selectors:
        dkim_selectors = None

    logging.debug(f"Checking: {domain}")
    dns_options = dict(
        nameservers=nameservers, timeout=dns_timeout, timeout_retries=timeout_retries
    )
    probes = {
        "spf": lambda: check_spf(domain, **dns_options),
        "dkim": lambda: check_dkim(domain, selectors=dkim_selectors, **dns_options),
        "dmarc": lambda: check_dmarc(domain, **dns_options),
        "mx": lambda: check_mx(domain, **dns_options),
        "bimi": lambda: check_bimi(domain, selector=bimi_selector, **dns_options),
        "mta_sts": lambda: check_mta_sts(
            domain, http_timeout=http_timeout, **dns_options
        ),
        "tls_rpt": lambda: check_smtp_tls_reporting(
            domain,
            verify_endpoints=verify_tls_rpt_endpoints,
            http_timeout=http_timeout,
            **dns_options,
        ),
        "dnssec": lambda: check_dnssec(domain, **dns_options),
    }
    names = [name for name in probes if name in enabled]
    outcomes = await asyncio.gather(
        *[_run_check(name, probes[name](), timeout) for name in names],
        return_exceptions=True,
    )

    results = {}
    errors = []
    for name in probes:
        results[name] = _empty_result(name) if name in CORE_CHECKS else None
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, Exception):
            reason = _error_reason(outcome)
            logging.debug(f"{CHECK_LABELS[name]} check failed: {reason}")
            results[name] = _failed_result(name, reason)
            errors.append(f"{CHECK_LABELS[name]}: {reason}")
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results[name] = outcome

    spf = results["spf"]
    dkim = results["dkim"]
    dmarc = results["dmarc"]
    mx = results["mx"]
    bimi = results["bimi"]
    mta_sts = results["mta_sts"]
    tls_rpt = results["tls_rpt"]
    dnssec = results["dnssec"]
    arc = None
    if "arc" in enabled:
        arc = check_arc_readiness(spf, dkim, dmarc)

    if bimi is not None:
        _check_bimi_prerequisites(bimi, dmarc)
    if mta_sts is not None:
        _check_mta_sts_mx_coverage(mta_sts, mx)

    grade = calculate_grade(spf, dkim, dmarc, mx, bimi, mta_sts, tls_rpt, arc, dnssec)
    recommendations = generate_recommendations(
        spf, dkim, dmarc, mx, bimi, mta_sts, tls_rpt, arc, dnssec
    )

    domain_results: DomainResult = {
        "domain": domain,
        "grade": grade["grade"],
        "score": grade["score"],
        "timestamp": _timestamp(),
        "spf": spf,
        "dkim": dkim,
        "dmarc": dmarc,
        "mx": mx,
        "bimi": bimi,
        "mta_sts": mta_sts,
        "tls_rpt": tls_rpt,
        "arc": arc,
        "dnssec": dnssec,
        "recommendations": recommendations,
    }
    if len(errors) > 0:
        domain_results["error"] = "; ".join(errors)
    return domain_results


async def _analyze_domain_or_fail(domain: str, **kwargs) -> DomainResult:
    try:
        return await analyze_domain(domain, **kwargs)
    except Exception as e:
        logging.debug(f"Analysis of {domain} failed: {e}")
        result = _invalid_domain_result(domain)
        result["error"] = _error_reason(e)
        return result


async def analyze_multiple(
    domains: Sequence[str],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    **kwargs,
) -> list[DomainResult]:
    """
    Analyzes a list of domains, ``concurrency`` domains at a time

    The DNS cache is cleared before each window of domains. A domain whose
    analysis raises an unexpected error gets an ``F`` grade and an
    ``error``, and the rest of the batch continues.

    Args:
        domains (list): A list of domains
        concurrency (int): The number of domains to analyze at once
        **kwargs: Options passed to :func:`analyze_domain`

    Returns:
        list: A list of results, in the same order as ``domains``

    Raises:
        :exc:`ValueError`
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    # Fail fast on unknown check names rather than once per domain
    get_enabled_checks(kwargs.get("checks"), kwargs.get("skip_checks"))
    results = []
    for i in range(0, len(domains), concurrency):
        window = domains[i : i + concurrency]
        DNS_CACHE.clear()
        results += await asyncio.gather(
            *[_analyze_domain_or_fail(domain, **kwargs) for domain in window]
        )
    return results


def results_to_json(
    results: Union[DomainResult, list[DomainResult]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def _count_issues(result: DomainResult, severity: str) -> int:
    count = 0
    for name in CHECK_NAMES:
        check_result = result.get(name)
        if check_result is None:
            continue
        count += len([i for i in check_result["issues"] if i["severity"] == severity])
    return count


def results_to_csv_rows(
    results: Union[DomainResult, list[DomainResult]],
) -> list[dict]:
    """
    Converts a results dictionary or list of dictionaries and returns a
    list of CSV row dictionaries

    Args:
        results (dict): A dictionary of results

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        _spf = result["spf"]
        _dkim = result["dkim"]
        _dmarc = result["dmarc"]
        _mx = result["mx"]
        row = {
            "domain": result["domain"],
            "grade": result["grade"],
            "score": result["score"],
            "spf_found": _spf["found"],
            "spf_record": _spf.get("record"),
            "spf_mechanism": _spf.get("mechanism"),
            "spf_lookup_count": _spf.get("lookup_count"),
            "dkim_found": _dkim["found"],
            "dkim_selectors": "|".join(
                s["selector"] for s in _dkim.get("selectors", [])
            ),
            "dmarc_found": _dmarc["found"],
            "dmarc_record": _dmarc.get("record"),
            "dmarc_location": _dmarc.get("location"),
            "dmarc_policy": _dmarc.get("policy"),
            "mx": "|".join(
                f"{r['priority']}, {r['exchange']}" for r in _mx.get("records", [])
            ),
            "mx_provider": _mx.get("provider"),
        }
        if result["bimi"] is not None:
            row["bimi_found"] = result["bimi"]["found"]
        if result["mta_sts"] is not None:
            policy = result["mta_sts"].get("policy") or {}
            row["mta_sts_found"] = result["mta_sts"]["found"]
            row["mta_sts_mode"] = policy.get("mode")
        if result["tls_rpt"] is not None:
            row["tls_rpt_found"] = result["tls_rpt"]["found"]
            row["tls_rpt_rua"] = "|".join(result["tls_rpt"].get("rua", []))
        if result["arc"] is not None:
            row["arc_ready"] = result["arc"]["ready"]
        if result["dnssec"] is not None:
            row["dnssec_enabled"] = result["dnssec"]["enabled"]
            row["dnssec_chain_valid"] = result["dnssec"].get("chain_valid")
        for severity in ("critical", "high", "medium"):
            row[f"{severity}_issues"] = _count_issues(result, severity)
        row["recommendations"] = "|".join(result["recommendations"])
        row["error"] = result.get("error")
        rows.append(row)
    return rows


def results_to_csv(results: Union[DomainResult, list[DomainResult]]) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "grade",
        "score",
        "spf_found",
        "spf_record",
        "spf_mechanism",
        "spf_lookup_count",
        "dkim_found",
        "dkim_selectors",
        "dmarc_found",
        "dmarc_record",
        "dmarc_location",
        "dmarc_policy",
        "mx",
        "mx_provider",
        "bimi_found",
        "mta_sts_found",
        "mta_sts_mode",
        "tls_rpt_found",
        "tls_rpt_rua",
        "arc_ready",
        "dnssec_enabled",
        "dnssec_chain_valid",
        "critical_issues",
        "high_issues",
        "medium_issues",
        "recommendations",
        "error",
    ]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    rows = results_to_csv_rows(results)
    writer.writerows(rows)
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
