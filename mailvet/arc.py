# -*- coding: utf-8 -*-
"""Authenticated Received Chain (ARC) readiness"""

from __future__ import annotations

from typing import TypedDict

from mailvet.dkim import DKIMResult, has_strong_dkim_key
from mailvet.dmarc import DMARCResult
from mailvet.spf import SPFResult
from mailvet.utils import Issue, make_issue

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


class ARCReadinessResult(TypedDict):
    ready: bool
    can_sign: bool
    can_validate: bool
    issues: list[Issue]


def check_arc_readiness(
    spf: SPFResult, dkim: DKIMResult, dmarc: DMARCResult
) -> ARCReadinessResult:
    """
    Checks if a domain has the prerequisites to take part in ARC chains

    ARC has no DNS record of its own. Sealing ARC headers needs DKIM keys,
    and ARC matters most when a DMARC policy would otherwise reject
    forwarded mail, so readiness is derived from the SPF, DKIM and DMARC
    results without any further DNS queries.

    Args:
        spf (dict): The results of :func:`mailvet.spf.check_spf`
        dkim (dict): The results of :func:`mailvet.dkim.check_dkim`
        dmarc (dict): The results of :func:`mailvet.dmarc.check_dmarc`

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``ready`` - ``True`` if both DKIM and DMARC are found
                     - ``can_sign`` - ``True`` if DKIM keys exist
                     - ``can_validate`` - Always ``True``
                     - ``issues`` - A list of issues
    """
    issues = []
    can_sign = True

    if not dkim["found"]:
        can_sign = False
        issues.append(
            make_issue(
                "medium",
                "DKIM not configured - cannot sign ARC headers",
                "Configure DKIM to enable ARC signing capability",
            )
        )
    elif not has_strong_dkim_key(dkim):
        issues.append(
            make_issue(
                "low",
                "DKIM keys should be 2048-bit RSA or ed25519 for ARC",
                "Upgrade DKIM keys to 2048-bit RSA or ed25519 for better ARC "
                "compatibility",
            )
        )

    if not dmarc["found"]:
        issues.append(
            make_issue(
                "low",
                "DMARC not configured - ARC benefits are limited",
                "Configure DMARC to fully benefit from ARC authentication chain",
            )
        )
    elif dmarc.get("policy") == "none":
        issues.append(
            make_issue(
                "info",
                'DMARC policy is "none" - ARC can help when upgrading to '
                "stricter policy",
                "ARC preserves authentication when emails are forwarded",
            )
        )

    if not spf["found"]:
        issues.append(
            make_issue(
                "info",
                "SPF not configured - ARC can help preserve SPF results across "
                "forwards",
                "Configure SPF for complete email authentication",
            )
        )

    ready = dkim["found"] and dmarc["found"]
    if ready and len(issues) == 0:
        issues.append(
            make_issue(
                "info",
                "Domain is ARC-ready",
                "Your email infrastructure can participate in ARC chains",
            )
        )

    return {
        "ready": ready,
        "can_sign": can_sign,
        "can_validate": True,
        "issues": issues,
    }
