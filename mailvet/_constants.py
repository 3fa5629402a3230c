# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) mailvet/{__version__}"
SYNTAX_ERROR_MARKER = "➞"

DEFAULT_DNS_TIMEOUT = 2.0
DEFAULT_HTTP_TIMEOUT = 5.0
DEFAULT_CHECK_TIMEOUT = 10.0
DEFAULT_CONCURRENCY = 5

# RFC 7208 limits
SPF_MAX_DNS_LOOKUPS = 10
SPF_LOOKUP_WARNING_THRESHOLD = 7
SPF_MAX_RECURSION_DEPTH = 10
SPF_MAX_RECORD_BYTES = 512

SCORE_BONUS_MAX = 15

GRADE_A_MIN = 90
GRADE_B_MIN = 75
GRADE_C_MIN = 50
GRADE_D_MIN = 25

DKIM_WEAK_KEY_BITS = 1024
DKIM_STRONG_KEY_BITS = 2048

# One day
MTA_STS_MIN_MAX_AGE = 86400

COMMON_DKIM_SELECTORS = [
    "default",
    "google",
    "selector1",  # Microsoft 365
    "selector2",  # Microsoft 365
    "k1",
    "k2",
    "s1",
    "s2",
    "dkim",
    "mail",
    "email",
    "smtp",
    "mandrill",
    "mailchimp",
    "amazonses",
    "ses",
    "sendgrid",
    "sg",
    "postmark",
    "pm",
    "mailgun",
    "mg",
    "sparkpost",
    "zendesk",
    "zendesk1",
    "zendesk2",
]

EMAIL_PROVIDERS = [
    (r"google\.com$|googlemail\.com$", "Google Workspace"),
    (r"outlook\.com$|protection\.outlook\.com$", "Microsoft 365"),
    (r"pphosted\.com$", "Proofpoint"),
    (r"mimecast\.com$", "Mimecast"),
    (r"barracuda(networks)?\.com$", "Barracuda"),
    (r"messagelabs\.com$", "Symantec/Broadcom"),
    (r"zoho\.com$", "Zoho Mail"),
    (r"yahoodns\.net$", "Yahoo Mail"),
    (r"secureserver\.net$", "GoDaddy"),
    (r"emailsrvr\.com$", "Rackspace"),
    (r"amazonaws\.com$", "Amazon SES"),
    (r"mailgun\.org$", "Mailgun"),
    (r"sendgrid\.net$", "SendGrid"),
    (r"postmarkapp\.com$", "Postmark"),
    (r"mx\.icloud\.com$", "Apple iCloud"),
    (r"fastmail\.com$", "Fastmail"),
]

CHECK_NAMES = [
    "spf",
    "dkim",
    "dmarc",
    "mx",
    "bimi",
    "mta_sts",
    "tls_rpt",
    "arc",
    "dnssec",
]

CACHE_MAX_LEN = 200000
CACHE_MAX_AGE_SECONDS = 60

env = os.environ

if "CACHE_MAX_LEN" in env:
    CACHE_MAX_LEN = int(env["CACHE_MAX_LEN"])
if "CACHE_MAX_AGE_SECONDS" in env:
    CACHE_MAX_AGE_SECONDS = int(env["CACHE_MAX_AGE_SECONDS"])

DNS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
DNS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])
