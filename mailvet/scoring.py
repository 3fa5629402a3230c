# -*- coding: utf-8 -*-
"""Scoring and grading of email authentication results"""

from __future__ import annotations

from typing import Optional, TypedDict

from mailvet._constants import (
    DKIM_STRONG_KEY_BITS,
    DKIM_WEAK_KEY_BITS,
    GRADE_A_MIN,
    GRADE_B_MIN,
    GRADE_C_MIN,
    GRADE_D_MIN,
    SCORE_BONUS_MAX,
    SPF_LOOKUP_WARNING_THRESHOLD,
    SPF_MAX_DNS_LOOKUPS,
)
from mailvet.arc import ARCReadinessResult
from mailvet.bimi import BIMIResult
from mailvet.dkim import DKIMResult, has_strong_dkim_key
from mailvet.dmarc import DMARCResult
from mailvet.dnssec import DNSSECResult
from mailvet.mta_sts import MTASTSResult
from mailvet.mx import MXResult
from mailvet.smtp_tls_reporting import TLSRPTResult
from mailvet.spf import SPFResult

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

SEVERITY_PENALTIES = {"critical": 15, "high": 8, "medium": 3, "low": 0, "info": 0}
# The number of issues of each severity that count towards the penalty
SEVERITY_PENALTY_CAPS = {"critical": 3, "high": 3, "medium": 5, "low": 0, "info": 0}

SPF_QUALIFIER_POINTS = {"-all": 20, "~all": 10, "?all": 5}
DMARC_POLICY_POINTS = {"reject": 20, "quarantine": 12, "none": 3}


class GradeResult(TypedDict):
    grade: str
    score: int


def _spf_points(spf: SPFResult) -> int:
    if not spf["found"]:
        return 0
    points = 15 + SPF_QUALIFIER_POINTS.get(spf.get("mechanism"), 0)
    if (spf.get("lookup_count") or 0) > SPF_MAX_DNS_LOOKUPS:
        points -= 10
    return points


def _dkim_points(dkim: DKIMResult) -> int:
    if not dkim["found"]:
        return 0
    points = 15
    if has_strong_dkim_key(dkim):
        points += 10
    elif any(
        (s.get("key_length") or 0) >= DKIM_WEAK_KEY_BITS
        for s in dkim.get("selectors", [])
    ):
        points += 5
    return points


def _dmarc_points(dmarc: DMARCResult) -> int:
    if not dmarc["found"]:
        return 0
    points = 10 + DMARC_POLICY_POINTS.get(dmarc.get("policy"), 0)
    if dmarc.get("reporting_enabled"):
        points += 5
    if dmarc.get("pct") in (None, 100):
        points += 5
    return points


def _bonus_points(
    dmarc: DMARCResult,
    bimi: Optional[BIMIResult],
    mta_sts: Optional[MTASTSResult],
    tls_rpt: Optional[TLSRPTResult],
    arc: Optional[ARCReadinessResult],
    dnssec: Optional[DNSSECResult],
) -> int:
    bonus = 0
    if bimi is not None and bimi["found"]:
        if dmarc["found"] and dmarc.get("policy") not in (None, "none"):
            bonus += 3
            if bimi.get("certificate_url"):
                bonus += 2
    if mta_sts is not None and mta_sts["found"]:
        mode = (mta_sts.get("policy") or {}).get("mode")
        if mode == "enforce":
            bonus += 4
        elif mode == "testing":
            bonus += 2
    if tls_rpt is not None and tls_rpt["found"] and len(tls_rpt.get("rua", [])) > 0:
        bonus += 3
    if arc is not None and arc["ready"] and arc["can_sign"]:
        bonus += 3
    if dnssec is not None:
        if dnssec.get("chain_valid"):
            bonus += 5
        elif dnssec["enabled"]:
            bonus += 3
    return min(bonus, SCORE_BONUS_MAX)


def calculate_issue_penalty(results: list[Optional[dict]]) -> int:
    """
    Calculates the score penalty for the issues in a list of check results

    Only a capped number of critical, high and medium issues count, so a
    single misconfiguration repeated many times cannot zero the score on
    its own.

    Args:
        results (list): Check results, ``None`` for checks that did not run

    Returns:
        int: The penalty
    """
    counts = dict.fromkeys(SEVERITY_PENALTIES, 0)
    for result in results:
        if result is None:
            continue
        for issue in result["issues"]:
            counts[issue["severity"]] += 1
    penalty = 0
    for severity, points in SEVERITY_PENALTIES.items():
        penalty += min(counts[severity], SEVERITY_PENALTY_CAPS[severity]) * points
    return penalty


def score_to_grade(score: int) -> str:
    """Converts a score from 0 to 100 into a letter grade"""
    if score >= GRADE_A_MIN:
        return "A"
    if score >= GRADE_B_MIN:
        return "B"
    if score >= GRADE_C_MIN:
        return "C"
    if score >= GRADE_D_MIN:
        return "D"
    return "F"


def calculate_grade(
    spf: SPFResult,
    dkim: DKIMResult,
    dmarc: DMARCResult,
    mx: MXResult,
    bimi: Optional[BIMIResult] = None,
    mta_sts: Optional[MTASTSResult] = None,
    tls_rpt: Optional[TLSRPTResult] = None,
    arc: Optional[ARCReadinessResult] = None,
    dnssec: Optional[DNSSECResult] = None,
) -> GradeResult:
    """
    Calculates the score and grade of a domain

    SPF (up to 35 points), DKIM (up to 25 points) and DMARC (up to 40
    points) make up the base score. BIMI, MTA-STS, TLS-RPT, ARC and DNSSEC
    add bonus points, capped at 15, and the total is capped at 100. A
    penalty for the issues of all checks is then subtracted.

    Args:
        spf (dict): SPF results
        dkim (dict): DKIM results
        dmarc (dict): DMARC results
        mx (dict): MX results
        bimi (dict): BIMI results
        mta_sts (dict): MTA-STS results
        tls_rpt (dict): SMTP TLS Reporting results
        arc (dict): ARC readiness results
        dnssec (dict): DNSSEC results

    Returns:
        dict: a ``dict`` with the keys ``grade`` and ``score``
    """
    score = _spf_points(spf) + _dkim_points(dkim) + _dmarc_points(dmarc)
    score += _bonus_points(dmarc, bimi, mta_sts, tls_rpt, arc, dnssec)
    score = min(100, score)
    score -= calculate_issue_penalty(
        [spf, dkim, dmarc, mx, bimi, mta_sts, tls_rpt, arc, dnssec]
    )
    score = max(0, min(100, score))
    return {"grade": score_to_grade(score), "score": score}


def generate_recommendations(
    spf: SPFResult,
    dkim: DKIMResult,
    dmarc: DMARCResult,
    mx: MXResult,
    bimi: Optional[BIMIResult] = None,
    mta_sts: Optional[MTASTSResult] = None,
    tls_rpt: Optional[TLSRPTResult] = None,
    arc: Optional[ARCReadinessResult] = None,
    dnssec: Optional[DNSSECResult] = None,
) -> list[str]:
    """
    Generates a list of recommendations, most important first

    Checks that did not run (``None``) produce no recommendations.

    Returns:
        list: Recommendations
    """
    recommendations = []

    if not spf["found"]:
        recommendations.append(
            (1, "Add an SPF record to specify authorized email senders")
        )
    if not dmarc["found"]:
        recommendations.append(
            (2, "Add a DMARC record to define your email authentication policy")
        )
    if not dkim["found"]:
        recommendations.append((3, "Configure DKIM signing for your email service"))

    if spf["found"]:
        mechanism = spf.get("mechanism")
        if mechanism == "+all":
            recommendations.append(
                (4, "Change SPF from +all to -all to block unauthorized senders")
            )
        elif mechanism == "~all":
            recommendations.append(
                (7, "Consider changing SPF from ~all (softfail) to -all (hardfail)")
            )
        lookup_count = spf.get("lookup_count") or 0
        if lookup_count > SPF_LOOKUP_WARNING_THRESHOLD:
            recommendations.append(
                (
                    10,
                    f"Reduce SPF DNS lookups ({lookup_count}/{SPF_MAX_DNS_LOOKUPS}) "
                    "to avoid evaluation failures",
                )
            )

    if dmarc["found"]:
        policy = dmarc.get("policy")
        if policy == "none":
            recommendations.append(
                (5, "Upgrade DMARC policy from none to quarantine or reject")
            )
        elif policy == "quarantine":
            recommendations.append(
                (8, "Consider upgrading DMARC policy from quarantine to reject")
            )
        if not dmarc.get("reporting_enabled"):
            recommendations.append(
                (9, "Add DMARC reporting (rua=) to monitor authentication failures")
            )

    if dkim["found"]:
        weak_keys = [
            s
            for s in dkim.get("selectors", [])
            if s.get("key_type") != "ed25519"
            and s.get("key_length")
            and s["key_length"] < DKIM_STRONG_KEY_BITS
        ]
        if len(weak_keys) > 0:
            recommendations.append(
                (6, "Upgrade DKIM keys to 2048-bit for better security")
            )

    if mta_sts is not None:
        if not mta_sts["found"]:
            recommendations.append(
                (11, "Add MTA-STS to enforce TLS for incoming mail")
            )
        elif (mta_sts.get("policy") or {}).get("mode") == "testing":
            recommendations.append(
                (14, "Upgrade MTA-STS from testing to enforce mode")
            )

    if tls_rpt is not None and not tls_rpt["found"]:
        recommendations.append(
            (12, "Add TLS-RPT to receive TLS connection failure reports")
        )

    if dnssec is not None and not dnssec["enabled"]:
        recommendations.append(
            (13, "Enable DNSSEC to protect your DNS records against spoofing")
        )

    if bimi is not None and dmarc["found"]:
        if dmarc.get("policy") not in (None, "none"):
            if not bimi["found"]:
                recommendations.append(
                    (15, "Add BIMI to display your brand logo in email clients")
                )
            elif not bimi.get("certificate_url"):
                recommendations.append(
                    (
                        16,
                        "Add a VMC certificate to BIMI for wider logo display "
                        "support",
                    )
                )

    recommendations.sort(key=lambda r: r[0])
    return [text for _, text in recommendations]
