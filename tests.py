#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import asyncio
import base64
import copy
import os
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

import dns.resolver
import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import mailvet
import mailvet._cli
import mailvet.arc
import mailvet.bimi
import mailvet.dkim
import mailvet.dmarc
import mailvet.dnssec
import mailvet.mta_sts
import mailvet.mx
import mailvet.scoring
import mailvet.smtp_tls_reporting
import mailvet.spf
import mailvet.utils
from mailvet.utils import DNSException

TXT_LOOKUPS = [
    "mailvet.spf.resolve_txt",
    "mailvet.dkim.resolve_txt",
    "mailvet.dmarc.resolve_txt",
    "mailvet.bimi.resolve_txt",
    "mailvet.mta_sts.resolve_txt",
    "mailvet.smtp_tls_reporting.resolve_txt",
]
MX_LOOKUPS = [
    "mailvet.mx.resolve_mx",
    "mailvet.smtp_tls_reporting.resolve_mx",
]

ED25519_PUBLIC_KEY = "11qYAYKxCrfVS/7TyWQHOg7hcvPapiMlrwIaaPcHURo="
DNSKEY_KSK = (
    "257 3 13 mdsswUyr3DPW132mOi8V9xESWE8jTo0dxCjjnopKl+GqJxpVXckHAeF+"
    "KkxLbxILfDLUT0rAK9iUzy1L53eKGQ=="
)
DNSKEY_ZSK = (
    "256 3 13 oJMRESz5E4gYzS/q6XDrvU1qMPYIjCWzJaOau8XNEZeqCYKD5ar0IRd8"
    "KqXXFJkqmVfRvMGPmM1x8fGAa2XhSA=="
)
DS_RECORD = "2371 13 2 1F987CC6583E92DF0890718C42 1F987CC6583E92DF0890718C42"


class FakeDNS:
    """Answers DNS lookups from dictionaries"""

    def __init__(self, txt=None, mx=None):
        self.txt = {k.lower(): v for k, v in (txt or {}).items()}
        self.mx = {k.lower(): v for k, v in (mx or {}).items()}

    @staticmethod
    def _answer(answers, domain):
        answer = answers.get(domain.lower().rstrip("."), [])
        if isinstance(answer, Exception):
            raise answer
        return list(answer)

    async def resolve_txt(self, domain, **kwargs):
        return self._answer(self.txt, domain)

    async def resolve_mx(self, domain, **kwargs):
        return self._answer(self.mx, domain)


def public_key_base64(key_size):
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    der = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return base64.b64encode(der).decode()


def good_results():
    return {
        "spf": {
            "found": True,
            "record": "v=spf1 include:_spf.example.com -all",
            "mechanism": "-all",
            "lookup_count": 2,
            "issues": [],
        },
        "dkim": {
            "found": True,
            "selectors": [
                {
                    "selector": "s1",
                    "found": True,
                    "key_type": "rsa",
                    "key_length": 2048,
                }
            ],
            "issues": [],
        },
        "dmarc": {
            "found": True,
            "record": "v=DMARC1; p=reject; rua=mailto:dmarc@example.com",
            "location": "example.com",
            "policy": "reject",
            "subdomain_policy": None,
            "reporting_enabled": True,
            "rua": ["mailto:dmarc@example.com"],
            "ruf": [],
            "pct": None,
            "issues": [],
        },
        "mx": {
            "found": True,
            "records": [
                {"exchange": "mx1.example.com", "priority": 10},
                {"exchange": "mx2.example.com", "priority": 20},
            ],
            "provider": None,
            "issues": [],
        },
        "bimi": {
            "found": True,
            "selector": "default",
            "logo_url": "https://example.com/logo.svg",
            "certificate_url": "https://example.com/vmc.pem",
            "issues": [],
        },
        "mta_sts": {
            "found": True,
            "id": "20240101T000000",
            "policy": {
                "version": "STSv1",
                "mode": "enforce",
                "mx": ["*.example.com"],
                "max_age": 604800,
            },
            "issues": [],
        },
        "tls_rpt": {
            "found": True,
            "rua": ["mailto:tlsrpt@example.com"],
            "endpoint_status": None,
            "issues": [],
        },
        "dnssec": {
            "found": True,
            "enabled": True,
            "chain_valid": True,
            "issues": [],
        },
    }


CHECK_FUNCTIONS = {
    "spf": "mailvet.check_spf",
    "dkim": "mailvet.check_dkim",
    "dmarc": "mailvet.check_dmarc",
    "mx": "mailvet.check_mx",
    "bimi": "mailvet.check_bimi",
    "mta_sts": "mailvet.check_mta_sts",
    "tls_rpt": "mailvet.check_smtp_tls_reporting",
    "dnssec": "mailvet.check_dnssec",
}


def messages(result):
    return [issue["message"] for issue in result["issues"]]


class Test(unittest.IsolatedAsyncioTestCase):
    def patchDNS(self, txt=None, mx=None):
        """Replaces the DNS lookups of every check with canned answers"""
        fake_dns = FakeDNS(txt, mx)
        for target in TXT_LOOKUPS:
            patcher = patch(target, fake_dns.resolve_txt)
            patcher.start()
            self.addCleanup(patcher.stop)
        for target in MX_LOOKUPS:
            patcher = patch(target, fake_dns.resolve_mx)
            patcher.start()
            self.addCleanup(patcher.stop)
        return fake_dns

    def patchChecks(self, **overrides):
        """Replaces every check with a mock that returns a good result"""
        results = good_results()
        results.update({k: v for k, v in overrides.items() if isinstance(v, dict)})
        mocks = {}
        for name, target in CHECK_FUNCTIONS.items():
            override = overrides.get(name)
            if override is not None and not isinstance(override, dict):
                mock = AsyncMock(side_effect=override)
            else:
                result = results[name]
                mock = AsyncMock(
                    side_effect=lambda *a, r=result, **k: copy.deepcopy(r)
                )
            patcher = patch(target, mock)
            patcher.start()
            self.addCleanup(patcher.stop)
            mocks[name] = mock
        return mocks

    def testNormalizeDomain(self):
        """Domains are cleaned up before they are checked"""
        examples = {
            "  Example.COM ": "example.com",
            "example.com.": "example.com",
            "https://example.com/path?q=1": "example.com",
            "https://[example.com/": "[example.com",
            "example.com:443": "example.com",
            "exa\u200bmple.com": "example.com",
            "bücher.de": "xn--bcher-kva.de",
        }
        for domain, normalized in examples.items():
            with self.subTest(domain=domain):
                self.assertEqual(mailvet.utils.normalize_domain(domain), normalized)

    def testValidDomains(self):
        """Only syntactically valid domain names are accepted"""
        self.assertTrue(mailvet.utils.is_valid_domain("example.com"))
        self.assertTrue(mailvet.utils.is_valid_domain("mail-1.example.co.uk"))
        self.assertFalse(mailvet.utils.is_valid_domain(""))
        self.assertFalse(mailvet.utils.is_valid_domain("localhost"))
        self.assertFalse(mailvet.utils.is_valid_domain("invalid_domain.com"))
        self.assertFalse(mailvet.utils.is_valid_domain("-bad.example.com"))
        self.assertFalse(mailvet.utils.is_valid_domain("example..com"))
        self.assertFalse(mailvet.utils.is_valid_domain(f"{'a' * 64}.com"))

    def testGetBaseDomain(self):
        subdomain = "foo.example.com"
        result = mailvet.utils.get_base_domain(subdomain)
        assert result == "example.com"

        # Test reserved domains
        subdomain = "_dmarc.nonauth-rua.invalid.example"
        result = mailvet.utils.get_base_domain(subdomain)
        assert result == "invalid.example"

        subdomain = "_dmarc.nonauth-rua.invalid.test"
        result = mailvet.utils.get_base_domain(subdomain)
        assert result == "invalid.test"

        # Test newer PSL entries
        subdomain = "e3191.c.akamaiedge.net"
        result = mailvet.utils.get_base_domain(subdomain)
        assert result == "c.akamaiedge.net"

    def testMakeIssue(self):
        """Issues only accept known severities"""
        issue = mailvet.utils.make_issue("high", "Something is wrong", "Fix it")
        self.assertEqual(
            issue,
            {
                "severity": "high",
                "message": "Something is wrong",
                "recommendation": "Fix it",
            },
        )
        self.assertNotIn("recommendation", mailvet.utils.make_issue("info", "FYI"))
        with self.assertRaises(ValueError):
            mailvet.utils.make_issue("severe", "Something is wrong")

    def testRecordTags(self):
        """Tag-value records are split into their tags"""
        tags = mailvet.utils.parse_record_tags(
            "v=TLSRPTv1 ; RUA = mailto:a@example.com;"
        )
        self.assertEqual(tags, {"v": "TLSRPTv1", "rua": "mailto:a@example.com"})
        record = "v=BIMI1; l=https://example.com/logo.svg; a="
        self.assertEqual(
            mailvet.utils.extract_tag(record, "l"), "https://example.com/logo.svg"
        )
        self.assertIsNone(mailvet.utils.extract_tag(record, "a"))
        self.assertEqual(
            mailvet.utils.split_uris("mailto:a@example.com, https://example.com/r,"),
            ["mailto:a@example.com", "https://example.com/r"],
        )
        self.assertEqual(
            mailvet.utils.parse_mailto_uri("mailto:tlsrpt@example.com!10m"),
            "tlsrpt@example.com",
        )
        self.assertIsNone(mailvet.utils.parse_mailto_uri("mailto:not-an-address"))

    def testDNSCache(self):
        """Cache keys ignore the case of the record type and domain"""
        cache = mailvet.utils.DNSCache()
        cache.set("txt", "Example.com", ["v=spf1 -all"])
        self.assertEqual(cache.get("TXT", "example.com"), ["v=spf1 -all"])
        self.assertIn(("TXT", "EXAMPLE.COM"), cache)
        self.assertIsNone(cache.get("MX", "example.com"))
        self.assertEqual(len(cache), 1)
        cache.clear()
        self.assertEqual(len(cache), 0)

    async def testResolveTXTCache(self):
        """TXT answers are cached, including empty ones"""
        cache = mailvet.utils.DNSCache()
        query = AsyncMock(return_value=["v=spf1 -all"])
        with patch("mailvet.utils.query_dns", query):
            first = await mailvet.utils.resolve_txt("example.com", cache=cache)
            second = await mailvet.utils.resolve_txt("EXAMPLE.com", cache=cache)
        self.assertEqual(first, ["v=spf1 -all"])
        self.assertEqual(second, ["v=spf1 -all"])
        query.assert_awaited_once()

        query = AsyncMock(side_effect=dns.resolver.NXDOMAIN())
        with patch("mailvet.utils.query_dns", query):
            self.assertEqual(
                await mailvet.utils.resolve_txt("missing.example.com", cache=cache), []
            )
            self.assertEqual(
                await mailvet.utils.resolve_txt("missing.example.com", cache=cache), []
            )
        query.assert_awaited_once()

    async def testResolveTXTFailure(self):
        """DNS failures are raised as DNSException and are not cached"""
        cache = mailvet.utils.DNSCache()
        query = AsyncMock(side_effect=dns.resolver.NoNameservers())
        with patch("mailvet.utils.query_dns", query):
            for _ in range(2):
                with self.assertRaises(DNSException):
                    await mailvet.utils.resolve_txt("example.com", cache=cache)
        self.assertEqual(query.await_count, 2)
        self.assertEqual(len(cache), 0)

    async def testResolveMX(self):
        """MX answers are sorted by priority, and a null MX has no exchange"""
        cache = mailvet.utils.DNSCache()
        query = AsyncMock(return_value=["20 mx2.example.com.", "10 MX1.example.com."])
        with patch("mailvet.utils.query_dns", query):
            hosts = await mailvet.utils.resolve_mx("example.com", cache=cache)
        self.assertEqual(
            hosts,
            [
                {"exchange": "mx1.example.com", "priority": 10},
                {"exchange": "mx2.example.com", "priority": 20},
            ],
        )

        query = AsyncMock(return_value=["0 ."])
        with patch("mailvet.utils.query_dns", query):
            hosts = await mailvet.utils.resolve_mx("example.net", cache=cache)
        self.assertEqual(hosts, [{"exchange": "", "priority": 0}])

    def testSPFTerms(self):
        """SPF records are split into qualifiers, mechanisms, and values"""
        record = "v=spf1 ip4:192.0.2.0/24 include:_spf.example.com ~all"
        self.assertEqual(
            mailvet.spf.parse_spf_terms(record),
            [
                {"qualifier": "", "mechanism": "ip4", "value": "192.0.2.0/24"},
                {"qualifier": "", "mechanism": "include", "value": "_spf.example.com"},
                {"qualifier": "~", "mechanism": "all", "value": ""},
            ],
        )
        self.assertEqual(mailvet.spf.get_all_mechanism(record), "~all")
        self.assertEqual(mailvet.spf.get_all_mechanism("v=spf1 all"), "+all")
        self.assertEqual(
            mailvet.spf.get_all_mechanism("v=spf1 IP4:192.0.2.1 -ALL"), "-all"
        )
        self.assertIsNone(mailvet.spf.get_all_mechanism("v=spf1 mx"))
        self.assertEqual(
            mailvet.spf.get_spf_includes(record), ["_spf.example.com"]
        )

    def testSPFSyntax(self):
        """Valid SPF records pass the syntax check"""
        examples = [
            "v=spf1 IP4:147.75.8.208 -ALL",
            "v=spf1 ip6:2001:db8::/32 a:mail.example.com mx -all",
            "v=spf1 exists:%{i}._spf.example.com redirect=_spf.example.com",
        ]
        for example in examples:
            with self.subTest(record=example):
                mailvet.spf.check_spf_syntax("example.com", example)

    def testSPFConcatenatedAll(self):
        """An all mechanism without whitespace before it is a syntax error"""
        with self.assertRaises(mailvet.spf.SPFSyntaxError):
            mailvet.spf.check_spf_syntax("example.com", "v=spf1 ip4:203.0.113.7~all")

    async def testSPFNotFound(self):
        self.patchDNS({"example.com": ["google-site-verification=abc"]})
        results = await mailvet.spf.check_spf("example.com")
        self.assertFalse(results["found"])
        self.assertEqual(results["issues"][0]["severity"], "critical")
        self.assertEqual(messages(results), ["No SPF record found"])

    async def testSPFSimpleInclude(self):
        self.patchDNS(
            {
                "example.com": ["v=spf1 include:_spf.example.net -all"],
                "_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 -all"],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertTrue(results["found"])
        self.assertEqual(results["mechanism"], "-all")
        self.assertEqual(results["lookup_count"], 1)
        self.assertEqual(results["includes"], ["_spf.example.net"])
        self.assertFalse(results["loop_detected"])
        self.assertEqual(results["issues"], [])

    async def testSPFIncludeLoop(self):
        """A record that includes itself is a loop"""
        self.patchDNS(
            {
                "a.example.com": ["v=spf1 include:b.example.com -all"],
                "b.example.com": ["v=spf1 include:a.example.com -all"],
            }
        )
        results = await mailvet.spf.check_spf("a.example.com")
        self.assertTrue(results["loop_detected"])
        self.assertEqual(results["lookup_count"], 2)
        self.assertEqual(messages(results), ["SPF record contains circular reference"])

    async def testSPFDiamondInclude(self):
        """A record reached again through a sibling include is a repeat visit"""
        self.patchDNS(
            {
                "example.com": [
                    "v=spf1 include:x.example.com include:y.example.com -all"
                ],
                "x.example.com": ["v=spf1 include:z.example.com -all"],
                "y.example.com": ["v=spf1 include:z.example.com -all"],
                "z.example.com": ["v=spf1 a -all"],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertTrue(results["loop_detected"])
        self.assertEqual(results["lookup_count"], 5)
        self.assertEqual(messages(results), ["SPF record contains circular reference"])

    async def testSPFSameDomainDifferentRecord(self):
        """A domain seen again with different record content is not a loop"""
        self.patchDNS(
            {
                "example.com": ["v=spf1 include:_spf.example.com -all"],
                "_spf.example.com": ["v=spf1 ip4:192.0.2.0/24 -all"],
            }
        )
        visited = {mailvet.spf._record_key("_spf.example.com", "v=spf1 a -all")}
        results = await mailvet.spf.count_dns_lookups(
            "example.com", "v=spf1 include:_spf.example.com -all", visited
        )
        self.assertFalse(results["loop_detected"])
        self.assertEqual(results["count"], 1)
        self.assertEqual(len(visited), 3)

    async def testSPFIncludeMissingSPF(self):
        """Include targets without an SPF record are reported"""
        self.patchDNS(
            {
                "example.com": [
                    "v=spf1 include:missing.example.com include:broken.example.com -all"
                ],
                "broken.example.com": DNSException("SERVFAIL"),
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertEqual(
            results["failed_includes"], ["missing.example.com", "broken.example.com"]
        )
        self.assertEqual(results["lookup_count"], 2)
        self.assertEqual(
            messages(results),
            [
                "SPF include target not found: missing.example.com",
                "SPF include target not found: broken.example.com",
            ],
        )

    async def testSPFRedirect(self):
        """Redirects are counted and followed"""
        self.patchDNS(
            {
                "example.com": ["v=spf1 redirect=_spf.example.com"],
                "_spf.example.com": ["v=spf1 a mx -all"],
                "example.net": ["v=spf1 redirect=missing.example.net"],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertEqual(results["lookup_count"], 3)
        self.assertEqual(results["failed_redirects"], [])
        self.assertIsNone(results["mechanism"])
        self.assertIn("SPF record has no all mechanism", messages(results))

        results = await mailvet.spf.check_spf("example.net")
        self.assertEqual(results["failed_redirects"], ["missing.example.net"])
        self.assertIn(
            "SPF redirect target not found: missing.example.net", messages(results)
        )

    async def testSPFMacrosInclude(self):
        """Macro include targets are counted but not resolved"""
        self.patchDNS({"example.com": ["v=spf1 include:%{d}._spf.example.com -all"]})
        results = await mailvet.spf.check_spf("example.com")
        self.assertEqual(results["lookup_count"], 1)
        self.assertEqual(results["failed_includes"], [])
        self.assertEqual(results["issues"], [])

    async def testTooManySPFDNSLookups(self):
        """More than 10 DNS lookups is a high severity issue"""
        self.patchDNS(
            {
                "example.com": [
                    "v=spf1 a mx ptr exists:%{i}.example.com a:b.example.com "
                    "mx:c.example.com include:_spf.example.net -all"
                ],
                "_spf.example.net": [
                    "v=spf1 a mx a:x.example.com a:y.example.com -all"
                ],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertEqual(results["lookup_count"], 11)
        self.assertIn("SPF record exceeds DNS lookup limit (11/10)", messages(results))
        self.assertIn("SPF record uses deprecated ptr mechanism", messages(results))

    async def testSPFCloseToLookupLimit(self):
        self.patchDNS(
            {
                "example.com": [
                    "v=spf1 a mx a:a.example.com a:b.example.com a:c.example.com "
                    "a:d.example.com mx:e.example.com mx:f.example.com -all"
                ],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertEqual(results["lookup_count"], 8)
        self.assertEqual(results["issues"][0]["severity"], "medium")
        self.assertEqual(
            messages(results), ["SPF record is close to DNS lookup limit (8/10)"]
        )

    async def testSPFRecursionDepth(self):
        """Deeply nested includes stop at the recursion depth limit"""
        records = {}
        for i in range(12):
            records[f"d{i}.example.com"] = [f"v=spf1 include:d{i + 1}.example.com -all"]
        self.patchDNS(records)
        results = await mailvet.spf.check_spf("d0.example.com")
        self.assertTrue(results["depth_limit_reached"])
        self.assertFalse(results["loop_detected"])
        self.assertEqual(results["lookup_count"], 11)
        self.assertIn(
            "SPF record analysis exceeded recursion depth limit", messages(results)
        )

    async def testSPFAllQualifiers(self):
        examples = {
            "pass.example.com": ("v=spf1 +all", "+all", "critical"),
            "bare.example.com": ("v=spf1 all", "+all", "critical"),
            "neutral.example.com": ("v=spf1 ?all", "?all", "high"),
            "softfail.example.com": ("v=spf1 ~all", "~all", "medium"),
        }
        self.patchDNS({domain: [e[0]] for domain, e in examples.items()})
        for domain, (_, mechanism, severity) in examples.items():
            with self.subTest(domain=domain):
                results = await mailvet.spf.check_spf(domain)
                self.assertEqual(results["mechanism"], mechanism)
                self.assertEqual(len(results["issues"]), 1)
                self.assertEqual(results["issues"][0]["severity"], severity)

    async def testJunkAfterAll(self):
        """Ignore any mechanisms after the all mechanism, but warn about it"""
        self.patchDNS(
            {"avd.dk": ["v=spf1 ip4:213.5.39.110 -all MS=83859DAEBD1978F9A7A67D3"]}
        )
        results = await mailvet.spf.check_spf("avd.dk")
        self.assertEqual(results["mechanism"], "-all")
        self.assertEqual(len(results["issues"]), 1)
        self.assertEqual(results["issues"][0]["severity"], "low")

    async def testSPFSyntaxErrors(self):
        self.patchDNS(
            {
                "example.com": ["v=spf1 ip4:203.0.113.7~all"],
                "example.net": ["v=spf1 -all", "v=spf1 mx -all"],
            }
        )
        results = await mailvet.spf.check_spf("example.com")
        self.assertTrue(
            any(m.startswith("SPF record syntax error") for m in messages(results))
        )

        results = await mailvet.spf.check_spf("example.net")
        self.assertEqual(messages(results), ["Multiple SPF records found (2)"])

    async def testDKIMKeySizes(self):
        self.patchDNS(
            {
                "strong._domainkey.example.com": [
                    f"v=DKIM1; k=rsa; p={public_key_base64(2048)}"
                ],
                "short._domainkey.example.net": [
                    f"v=DKIM1; k=rsa; p={public_key_base64(1024)}"
                ],
            }
        )
        results = await mailvet.dkim.check_dkim(
            "example.com", selectors=["strong", "missing"]
        )
        self.assertTrue(results["found"])
        self.assertEqual(len(results["selectors"]), 1)
        self.assertEqual(results["selectors"][0]["selector"], "strong")
        self.assertEqual(results["selectors"][0]["key_length"], 2048)
        self.assertEqual(results["issues"], [])

        results = await mailvet.dkim.check_dkim("example.net", selectors=["short"])
        self.assertEqual(results["selectors"][0]["key_length"], 1024)
        self.assertEqual(
            messages(results), ['DKIM selector "short" uses 1024-bit RSA key']
        )
        self.assertEqual(results["issues"][0]["severity"], "medium")

    async def testDKIMKeyProblems(self):
        self.patchDNS(
            {
                "revoked._domainkey.example.com": ["v=DKIM1; k=rsa; p="],
                "garbage._domainkey.example.com": ["v=DKIM1; p=notakey!"],
                "ed._domainkey.example.com": [
                    f"v=DKIM1; k=ed25519; p={ED25519_PUBLIC_KEY}"
                ],
            }
        )
        results = await mailvet.dkim.check_dkim(
            "example.com", selectors=["revoked", "garbage", "ed"]
        )
        self.assertEqual(len(results["selectors"]), 3)
        severities = {i["message"]: i["severity"] for i in results["issues"]}
        self.assertEqual(
            severities,
            {
                'DKIM selector "revoked" has a revoked key (p= is empty)': "critical",
                'DKIM selector "garbage" has missing or invalid public key (p=)': (
                    "high"
                ),
            },
        )
        ed25519 = [s for s in results["selectors"] if s["selector"] == "ed"][0]
        self.assertEqual(ed25519["key_type"], "ed25519")
        self.assertEqual(ed25519["key_length"], 256)

    async def testDKIMNotFound(self):
        self.patchDNS({})
        results = await mailvet.dkim.check_dkim("example.com")
        self.assertFalse(results["found"])
        self.assertEqual(
            messages(results), ["No DKIM records found for common selectors"]
        )

    async def testDKIMLookupFailures(self):
        """A failed selector lookup only fails the check if every lookup fails"""
        self.patchDNS(
            {
                "s1._domainkey.example.com": DNSException("SERVFAIL"),
                "s2._domainkey.example.com": [
                    f"v=DKIM1; k=ed25519; p={ED25519_PUBLIC_KEY}"
                ],
                "s1._domainkey.example.net": DNSException("SERVFAIL"),
            }
        )
        results = await mailvet.dkim.check_dkim("example.com", selectors=["s1", "s2"])
        self.assertTrue(results["found"])

        with self.assertRaises(DNSException):
            await mailvet.dkim.check_dkim("example.net", selectors=["s1"])

    def testDMARCMixedFormatting(self):
        """DMARC records with extra spaces and mixed case are still valid"""
        examples = [
            "v=DMARC1;p=ReJect",
            "v = DMARC1;p=reject;",
            "v = DMARC1\t;\tp=reject\t;",
            "v = DMARC1\t;\tp\t\t\t=\t\t\treject\t;",
            "V=DMARC1;p=reject;",
        ]

        for example in examples:
            parsed_record = mailvet.dmarc.parse_dmarc_tags(example)
            self.assertEqual(parsed_record["tags"]["p"].lower(), "reject")
            self.assertEqual(parsed_record["unknown_tags"], [])

    async def testDMARCReject(self):
        self.patchDNS(
            {"_dmarc.example.com": ["v=DMARC1; p=reject; rua=mailto:dmarc@example.com"]}
        )
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertTrue(results["found"])
        self.assertEqual(results["location"], "example.com")
        self.assertEqual(results["policy"], "reject")
        self.assertTrue(results["reporting_enabled"])
        self.assertEqual(results["rua"], ["mailto:dmarc@example.com"])
        self.assertIsNone(results["pct"])
        self.assertEqual(results["issues"], [])

    async def testDMARCBaseDomainFallback(self):
        """Subdomains without a DMARC record use the base domain's record"""
        self.patchDNS(
            {"_dmarc.example.com": ["v=DMARC1; p=reject; rua=mailto:dmarc@example.com"]}
        )
        results = await mailvet.dmarc.check_dmarc("mail.example.com")
        self.assertTrue(results["found"])
        self.assertEqual(results["location"], "example.com")

    async def testDMARCNotFound(self):
        self.patchDNS({})
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertFalse(results["found"])
        self.assertEqual(messages(results), ["No DMARC record found"])
        self.assertEqual(results["issues"][0]["severity"], "critical")

    async def testDMARCPolicyNone(self):
        self.patchDNS({"_dmarc.example.com": ["v=DMARC1; p=none"]})
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertEqual(results["policy"], "none")
        self.assertFalse(results["reporting_enabled"])
        self.assertEqual(
            messages(results),
            [
                'DMARC policy is "none" - no enforcement',
                "No DMARC reporting configured",
            ],
        )

    async def testDMARCExternalReportDestination(self):
        """External report destinations must authorize the reports"""
        record = "v=DMARC1; p=reject; rua=mailto:reports@example.net"
        self.patchDNS(
            {
                "_dmarc.example.com": [record],
                "_dmarc.example.org": [record],
                "example.org._report._dmarc.example.net": ["v=DMARC1"],
            }
        )
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertEqual(
            messages(results),
            [
                "example.net does not indicate that it accepts DMARC reports "
                "about example.com"
            ],
        )
        self.assertEqual(results["issues"][0]["severity"], "high")

        results = await mailvet.dmarc.check_dmarc("example.org")
        self.assertEqual(results["issues"], [])

    async def testDMARCPctLessThan100Warning(self):
        """An issue is reported if the DMARC pct value is less than 100"""
        self.patchDNS(
            {
                "_dmarc.example.com": [
                    "v=DMARC1; p=reject; pct=50; rua=mailto:dmarc@example.com"
                ],
                "_dmarc.example.net": [
                    "v=DMARC1; p=reject; pct=abc; rua=mailto:dmarc@example.net"
                ],
            }
        )
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertEqual(results["pct"], 50)
        self.assertEqual(
            messages(results), ["DMARC policy applies to only 50% of messages"]
        )

        results = await mailvet.dmarc.check_dmarc("example.net")
        self.assertIsNone(results["pct"])
        self.assertEqual(messages(results), ["Invalid pct value: must be 0-100"])

    async def testDMARCUnknownTags(self):
        self.patchDNS(
            {
                "_dmarc.example.com": [
                    "v=DMARC1; p=quarantine; foo=bar; rua=mailto:dmarc@example.com"
                ]
            }
        )
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertIn("Unknown DMARC tags found: foo", messages(results))
        self.assertIn(
            'DMARC policy is "quarantine" - consider upgrading', messages(results)
        )

    async def testInvalidDMARCPolicyValue(self):
        self.patchDNS(
            {"_dmarc.example.com": ["v=DMARC1; p=foo; rua=mailto:dmarc@example.com"]}
        )
        results = await mailvet.dmarc.check_dmarc("example.com")
        self.assertIsNone(results["policy"])
        self.assertEqual(messages(results), ['Invalid DMARC policy value: "foo"'])

    async def testMX(self):
        self.patchDNS(
            mx={
                "null.example.com": [{"exchange": "", "priority": 0}],
                "single.example.com": [{"exchange": "mx.example.com", "priority": 10}],
                "same.example.com": [
                    {"exchange": "mx1.example.com", "priority": 10},
                    {"exchange": "mx2.example.com", "priority": 10},
                ],
                "google.example.com": [
                    {"exchange": "aspmx.l.google.com", "priority": 1},
                    {"exchange": "alt1.aspmx.l.google.com", "priority": 5},
                ],
            }
        )
        results = await mailvet.mx.check_mx("missing.example.com")
        self.assertFalse(results["found"])
        self.assertEqual(messages(results), ["No MX records found"])

        results = await mailvet.mx.check_mx("null.example.com")
        self.assertTrue(results["found"])
        self.assertEqual(
            messages(results),
            ["Null MX record (RFC 7505) - domain does not accept email"],
        )

        results = await mailvet.mx.check_mx("single.example.com")
        self.assertEqual(messages(results), ["Only one MX record - no redundancy"])

        results = await mailvet.mx.check_mx("same.example.com")
        self.assertEqual(
            messages(results),
            ["All MX records have same priority - round-robin delivery"],
        )

        results = await mailvet.mx.check_mx("google.example.com")
        self.assertEqual(results["provider"], "Google Workspace")
        self.assertEqual(
            messages(results), ["Email provider detected: Google Workspace"]
        )

    async def testBIMI(self):
        """Test BIMI checks"""
        self.patchDNS(
            {
                "default._bimi.example.com": [
                    "v=BIMI1; l=https://example.com/logo.svg; "
                    "a=https://example.com/vmc.pem"
                ],
                "default._bimi.example.net": ["v=BIMI1; l=http://example.net/logo.svg"],
                "brand._bimi.example.org": ["v=BIMI1; l=https://example.org/logo.png"],
            }
        )
        results = await mailvet.bimi.check_bimi("example.com")
        self.assertTrue(results["found"])
        self.assertEqual(results["logo_url"], "https://example.com/logo.svg")
        self.assertEqual(results["certificate_url"], "https://example.com/vmc.pem")
        self.assertEqual(results["issues"], [])

        results = await mailvet.bimi.check_bimi("example.net")
        self.assertEqual(
            messages(results),
            [
                "BIMI logo URL must use HTTPS",
                "No VMC (Verified Mark Certificate) specified",
            ],
        )

        results = await mailvet.bimi.check_bimi("example.org", selector="brand")
        self.assertEqual(results["selector"], "brand")
        self.assertIn("BIMI logo should be SVG Tiny PS format", messages(results))

        results = await mailvet.bimi.check_bimi("example.info")
        self.assertFalse(results["found"])
        self.assertEqual(results["issues"][0]["severity"], "info")

    def testMTASTSPolicyParsing(self):
        policy = (
            "version: STSv1\r\n"
            "mode: enforce\r\n"
            "mx: mail.example.com\r\n"
            "mx: *.example.net\r\n"
            "max_age: 604800\r\n"
        )
        results = mailvet.mta_sts.parse_mta_sts_policy(policy)
        self.assertEqual(
            results["policy"],
            {
                "version": "STSv1",
                "mode": "enforce",
                "mx": ["mail.example.com", "*.example.net"],
                "max_age": 604800,
            },
        )
        self.assertEqual(results["warnings"], [])

        results = mailvet.mta_sts.parse_mta_sts_policy(
            "version: STSv1\nmode: enforce\nmx: mail.example.com\nfoo: bar\n"
        )
        self.assertEqual(
            results["warnings"],
            ["Line 4: Unexpected key: foo", "Missing required key: max_age."],
        )

        with self.assertRaises(mailvet.mta_sts.MTASTSPolicySyntaxError):
            mailvet.mta_sts.parse_mta_sts_policy("<html>Not found</html>")

    def testMTASTSPatterns(self):
        patterns = ["mail.example.com", "*.example.net"]
        self.assertTrue(
            mailvet.mta_sts.mx_in_mta_sts_patterns("MAIL.example.com.", patterns)
        )
        self.assertTrue(
            mailvet.mta_sts.mx_in_mta_sts_patterns("mx1.example.net", patterns)
        )
        self.assertFalse(
            mailvet.mta_sts.mx_in_mta_sts_patterns("example.net", patterns)
        )
        self.assertFalse(
            mailvet.mta_sts.mx_in_mta_sts_patterns("a.b.example.org", patterns)
        )

    async def testMTASTSPolicyDownload(self):
        def handler(request):
            if request.url.host == "mta-sts.example.com":
                return httpx.Response(
                    200,
                    content=b"version: STSv1\nmode: enforce\n",
                    headers={"Content-Type": "text/plain; charset=utf-8"},
                )
            if request.url.host == "mta-sts.example.net":
                return httpx.Response(200, content=b"version: STSv1\n")
            if request.url.host == "mta-sts.example.org":
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            results = await mailvet.mta_sts.download_mta_sts_policy(
                "example.com", client=client
            )
            self.assertEqual(results["policy"], "version: STSv1\nmode: enforce\n")
            self.assertEqual(results["warnings"], [])

            results = await mailvet.mta_sts.download_mta_sts_policy(
                "example.net", client=client
            )
            self.assertEqual(len(results["warnings"]), 1)

            with self.assertRaises(mailvet.mta_sts.MTASTSPolicyDownloadError) as e:
                await mailvet.mta_sts.download_mta_sts_policy(
                    "example.org", client=client
                )
            self.assertEqual(e.exception.reason, "timeout")

            with self.assertRaises(mailvet.mta_sts.MTASTSPolicyDownloadError) as e:
                await mailvet.mta_sts.download_mta_sts_policy(
                    "example.info", client=client
                )
            self.assertEqual(e.exception.reason, "http_error")
            self.assertEqual(e.exception.status, 404)

    async def testMTASTS(self):
        self.patchDNS(
            {
                "_mta-sts.example.com": ["v=STSv1; id=20240101T000000"],
                "_mta-sts.example.net": ["v=STSv1;"],
            }
        )
        policy = {
            "policy": (
                "version: STSv1\nmode: testing\nmx: *.example.com\nmax_age: 604800\n"
            ),
            "warnings": [],
        }
        download = AsyncMock(return_value=policy)
        with patch("mailvet.mta_sts.download_mta_sts_policy", download):
            results = await mailvet.mta_sts.check_mta_sts("example.com")
            self.assertTrue(results["found"])
            self.assertEqual(results["id"], "20240101T000000")
            self.assertEqual(results["policy"]["mode"], "testing")
            self.assertEqual(messages(results), ["MTA-STS policy in testing mode"])

            results = await mailvet.mta_sts.check_mta_sts("example.net")
            self.assertIn("MTA-STS record missing id tag", messages(results))

            results = await mailvet.mta_sts.check_mta_sts("example.org")
            self.assertFalse(results["found"])
            self.assertEqual(messages(results), ["No MTA-STS DNS record found"])

        download = AsyncMock(
            side_effect=mailvet.mta_sts.MTASTSPolicyDownloadError(
                "HTTP 404", reason="http_error", status=404
            )
        )
        with patch("mailvet.mta_sts.download_mta_sts_policy", download):
            results = await mailvet.mta_sts.check_mta_sts("example.com")
            self.assertIsNone(results["policy"])
            self.assertEqual(messages(results), ["MTA-STS policy file not found (404)"])

        download = AsyncMock(
            side_effect=mailvet.mta_sts.MTASTSPolicyDownloadError(
                "timed out", reason="timeout"
            )
        )
        with patch("mailvet.mta_sts.download_mta_sts_policy", download):
            results = await mailvet.mta_sts.check_mta_sts(
                "example.com", http_timeout=2.5
            )
        self.assertEqual(messages(results), ["MTA-STS policy fetch timed out"])
        self.assertEqual(
            results["issues"][0]["recommendation"],
            "Ensure the policy endpoint responds within 2.5 seconds",
        )

    async def testSMTPTLSReporting(self):
        self.patchDNS(
            {
                "_smtp._tls.example.com": ["v=TLSRPTv1; rua=mailto:tlsrpt@example.com"],
                "_smtp._tls.example.net": ["v=TLSRPTv1;"],
                "_smtp._tls.example.org": ["v=TLSRPTv1; rua=mailto:not-an-address"],
            }
        )
        results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
            "example.com"
        )
        self.assertTrue(results["found"])
        self.assertEqual(results["rua"], ["mailto:tlsrpt@example.com"])
        self.assertEqual(results["issues"], [])

        results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
            "example.net"
        )
        self.assertEqual(
            messages(results), ["TLS-RPT record has no reporting addresses (rua=)"]
        )
        self.assertIsNone(results["endpoint_status"])

        results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
            "example.org"
        )
        self.assertEqual(
            messages(results),
            ["Invalid email in TLS-RPT reporting address: mailto:not-an-address"],
        )

        results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
            "example.info"
        )
        self.assertFalse(results["found"])
        self.assertEqual(results["issues"][0]["severity"], "low")

    async def testSMTPTLSReportingEndpoints(self):
        self.patchDNS(
            {
                "_smtp._tls.example.com": [
                    "v=TLSRPTv1; rua=mailto:tlsrpt@example.net,"
                    "https://reports.example.com/tlsrpt"
                ],
            },
            mx={"example.net": []},
        )
        url = "https://reports.example.com/tlsrpt"
        verify = AsyncMock(
            return_value={
                "endpoint": url,
                "type": "https",
                "reachable": False,
                "error": "HTTP 500",
            }
        )
        with patch("mailvet.smtp_tls_reporting.verify_https_endpoint", verify):
            results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
                "example.com", verify_endpoints=True
            )
        self.assertEqual(
            messages(results),
            [
                'TLS-RPT reporting email domain "example.net" '
                "cannot receive reports: No MX records",
                f"TLS-RPT HTTPS endpoint unreachable: {url}",
            ],
        )
        self.assertEqual(
            results["issues"][1]["recommendation"],
            "Verify the endpoint is accessible: HTTP 500",
        )
        self.assertEqual(len(results["endpoint_status"]), 2)
        self.assertEqual(results["endpoint_status"][0]["error"], "No MX records")

    async def testSMTPTLSReportingMailtoLookupFailure(self):
        """A failed MX lookup is reported with its error"""
        self.patchDNS(
            {"_smtp._tls.example.com": ["v=TLSRPTv1; rua=mailto:tlsrpt@example.net"]},
            mx={"example.net": DNSException("SERVFAIL")},
        )
        results = await mailvet.smtp_tls_reporting.check_smtp_tls_reporting(
            "example.com", verify_endpoints=True
        )
        self.assertEqual(
            messages(results),
            [
                'TLS-RPT reporting email domain "example.net" '
                "cannot receive reports: MX lookup failed: SERVFAIL"
            ],
        )
        self.assertEqual(
            results["endpoint_status"][0]["error"], "MX lookup failed: SERVFAIL"
        )

    async def testVerifyHTTPSEndpoint(self):
        def handler(request):
            if request.url.path == "/post-only":
                return httpx.Response(405)
            if request.url.path == "/refused":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            status = await mailvet.smtp_tls_reporting.verify_https_endpoint(
                "https://example.com/post-only", client=client
            )
            self.assertTrue(status["reachable"])
            self.assertNotIn("error", status)

            status = await mailvet.smtp_tls_reporting.verify_https_endpoint(
                "https://example.com/broken", client=client
            )
            self.assertFalse(status["reachable"])
            self.assertEqual(status["error"], "HTTP 500")

            status = await mailvet.smtp_tls_reporting.verify_https_endpoint(
                "https://example.com/refused", client=client
            )
            self.assertFalse(status["reachable"])
            self.assertEqual(status["error"], "Connection failed: refused")

    def testParseDSRecord(self):
        ds = mailvet.dnssec.parse_ds_record(DS_RECORD)
        self.assertEqual(ds["key_tag"], 2371)
        self.assertEqual(ds["algorithm_name"], "ECDSAP256SHA256")
        self.assertEqual(ds["strength"], "strong")
        self.assertEqual(ds["digest_type_name"], "SHA-256")
        self.assertEqual(
            ds["digest"], "1F987CC6583E92DF0890718C421F987CC6583E92DF0890718C42"
        )
        with self.assertRaises(ValueError):
            mailvet.dnssec.parse_ds_record("2371 13")

        dnskey = mailvet.dnssec.parse_dnskey_record(DNSKEY_KSK)
        self.assertEqual(dnskey["key_type"], "KSK")
        dnskey = mailvet.dnssec.parse_dnskey_record(DNSKEY_ZSK)
        self.assertEqual(dnskey["key_type"], "ZSK")

    def patchDNSSEC(self, records, chain_valid=True):
        async def query_dns(domain, record_type, **kwargs):
            answer = records.get(record_type, [])
            if isinstance(answer, Exception):
                raise answer
            return answer

        validate = AsyncMock(return_value=chain_valid)
        for target, replacement in [
            ("mailvet.dnssec.query_dns", query_dns),
            ("mailvet.dnssec.validate_dnskey_rrset", validate),
        ]:
            patcher = patch(target, replacement)
            patcher.start()
            self.addCleanup(patcher.stop)
        return validate

    async def testDNSSECNotEnabled(self):
        self.patchDNSSEC({"DS": dns.resolver.NoAnswer()})
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertFalse(results["found"])
        self.assertFalse(results["enabled"])
        self.assertEqual(messages(results), ["DNSSEC is not enabled for this domain"])

    async def testDNSSECValidChain(self):
        validate = self.patchDNSSEC(
            {"DS": [DS_RECORD], "DNSKEY": [DNSKEY_KSK, DNSKEY_ZSK]}
        )
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertTrue(results["enabled"])
        self.assertTrue(results["chain_valid"])
        self.assertEqual(results["dnskey"]["ksk_count"], 1)
        self.assertEqual(results["dnskey"]["zsk_count"], 1)
        self.assertEqual(results["issues"], [])
        validate.assert_awaited_once()

    async def testDNSSECBrokenChain(self):
        self.patchDNSSEC(
            {"DS": [DS_RECORD], "DNSKEY": [DNSKEY_KSK, DNSKEY_ZSK]}, chain_valid=False
        )
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertFalse(results["chain_valid"])
        self.assertEqual(
            messages(results),
            [
                "DNSSEC chain may be broken - DS records exist but DNSKEY "
                "configuration appears incomplete"
            ],
        )

    async def testDNSSECWeakAlgorithms(self):
        self.patchDNSSEC(
            {"DS": ["12345 5 1 ABCDEF0123456789"], "DNSKEY": ["257 3 5 AwEAAbc="]},
            chain_valid=False,
        )
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertEqual(
            messages(results),
            [
                "DS record uses weak algorithm: RSASHA1",
                "DS record uses weak digest type: SHA-1",
                "No ZSK (Zone Signing Key) found in DNSKEY records",
                "DNSKEY uses weak algorithm: RSASHA1 (KSK)",
                "DNSSEC chain may be broken - DS records exist but DNSKEY "
                "configuration appears incomplete",
            ],
        )

    async def testDNSSECMissingDS(self):
        validate = self.patchDNSSEC({"DNSKEY": [DNSKEY_KSK, DNSKEY_ZSK]})
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertTrue(results["enabled"])
        self.assertFalse(results["chain_valid"])
        self.assertEqual(
            messages(results),
            ["DNSKEY records exist but no DS record found at parent zone"],
        )
        validate.assert_not_awaited()

    async def testDNSSECServfail(self):
        self.patchDNSSEC({"DS": dns.resolver.NoNameservers()})
        results = await mailvet.dnssec.check_dnssec("example.com")
        self.assertTrue(results["enabled"])
        self.assertFalse(results["chain_valid"])
        self.assertEqual(results["issues"][0]["severity"], "critical")

    def testARCReadiness(self):
        results = good_results()
        arc = mailvet.arc.check_arc_readiness(
            results["spf"], results["dkim"], results["dmarc"]
        )
        self.assertTrue(arc["ready"])
        self.assertTrue(arc["can_sign"])
        self.assertTrue(arc["can_validate"])
        self.assertEqual(messages(arc), ["Domain is ARC-ready"])

        arc = mailvet.arc.check_arc_readiness(
            results["spf"],
            {"found": False, "selectors": [], "issues": []},
            results["dmarc"],
        )
        self.assertFalse(arc["ready"])
        self.assertFalse(arc["can_sign"])
        self.assertEqual(arc["issues"][0]["severity"], "medium")
        self.assertEqual(
            messages(arc), ["DKIM not configured - cannot sign ARC headers"]
        )

        dkim = copy.deepcopy(results["dkim"])
        dkim["selectors"][0]["key_length"] = 1024
        arc = mailvet.arc.check_arc_readiness(results["spf"], dkim, results["dmarc"])
        self.assertTrue(arc["ready"])
        self.assertEqual(
            messages(arc), ["DKIM keys should be 2048-bit RSA or ed25519 for ARC"]
        )

    def testScoreToGrade(self):
        examples = {
            100: "A",
            90: "A",
            89: "B",
            75: "B",
            74: "C",
            50: "C",
            49: "D",
            25: "D",
            24: "F",
            0: "F",
        }
        for score, grade in examples.items():
            with self.subTest(score=score):
                self.assertEqual(mailvet.scoring.score_to_grade(score), grade)

    def testIssuePenaltyCaps(self):
        """Only a capped number of issues of each severity count"""
        issues = []
        counts = [("critical", 5), ("high", 5), ("medium", 7), ("low", 4)]
        for severity, count in counts:
            issues += [mailvet.utils.make_issue(severity, "x") for _ in range(count)]
        penalty = mailvet.scoring.calculate_issue_penalty([{"issues": issues}, None])
        self.assertEqual(penalty, 45 + 24 + 15)

    def gradeScore(self, results, **optional):
        return mailvet.scoring.calculate_grade(
            results["spf"], results["dkim"], results["dmarc"], results["mx"], **optional
        )["score"]

    def partialResults(self):
        """Results with room below 100 for the bonus points"""
        results = good_results()
        results["spf"]["mechanism"] = "~all"
        results["dkim"] = {"found": False, "selectors": [], "issues": []}
        results["dmarc"]["policy"] = "quarantine"
        results["dmarc"]["reporting_enabled"] = False
        return results

    def testBonusPoints(self):
        """Each optional result adds its own bonus"""
        results = self.partialResults()
        base = self.gradeScore(results)
        self.assertEqual(base, 25 + 27)
        testing_policy = copy.deepcopy(results["mta_sts"])
        testing_policy["policy"]["mode"] = "testing"
        no_certificate = copy.deepcopy(results["bimi"])
        no_certificate["certificate_url"] = None
        examples = [
            ("bimi", results["bimi"], 5),
            ("bimi", no_certificate, 3),
            ("mta_sts", results["mta_sts"], 4),
            ("mta_sts", testing_policy, 2),
            ("tls_rpt", results["tls_rpt"], 3),
            ("tls_rpt", {"found": True, "rua": [], "issues": []}, 0),
            ("arc", {"ready": True, "can_sign": True, "issues": []}, 3),
            ("arc", {"ready": False, "can_sign": False, "issues": []}, 0),
            ("dnssec", results["dnssec"], 5),
            (
                "dnssec",
                {"found": True, "enabled": True, "chain_valid": False, "issues": []},
                3,
            ),
        ]
        for name, result, bonus in examples:
            with self.subTest(check=name, bonus=bonus):
                score = self.gradeScore(results, **{name: result})
                self.assertEqual(score - base, bonus)

    def testBonusCap(self):
        """The bonus points are capped at 15"""
        results = self.partialResults()
        score = self.gradeScore(
            results,
            bimi=results["bimi"],
            mta_sts=results["mta_sts"],
            tls_rpt=results["tls_rpt"],
            arc={"ready": True, "can_sign": True, "issues": []},
            dnssec=results["dnssec"],
        )
        self.assertEqual(score, self.gradeScore(results) + 15)

    def testBIMIWithoutDMARCEnforcement(self):
        """BIMI adds nothing while the DMARC policy is none"""
        results = self.partialResults()
        results["dmarc"]["policy"] = "none"
        self.assertTrue(results["bimi"]["certificate_url"])
        self.assertEqual(
            self.gradeScore(results, bimi=results["bimi"]), self.gradeScore(results)
        )

    def testSPFLookupLimitDeduction(self):
        """More than 10 SPF lookups costs 10 points"""
        results = self.partialResults()
        base = self.gradeScore(results)
        results["spf"]["lookup_count"] = 10
        self.assertEqual(self.gradeScore(results), base)
        results["spf"]["lookup_count"] = 11
        self.assertEqual(self.gradeScore(results), base - 10)

    def testPerfectGrade(self):
        results = good_results()
        grade = mailvet.scoring.calculate_grade(
            results["spf"], results["dkim"], results["dmarc"], results["mx"]
        )
        self.assertEqual(grade, {"grade": "A", "score": 100})
        recommendations = mailvet.scoring.generate_recommendations(
            results["spf"], results["dkim"], results["dmarc"], results["mx"]
        )
        self.assertEqual(recommendations, [])

    def testFailingGrade(self):
        spf = {
            "found": False,
            "issues": [mailvet.utils.make_issue("critical", "No SPF record found")],
        }
        dkim = {"found": False, "selectors": [], "issues": []}
        dmarc = {
            "found": False,
            "issues": [mailvet.utils.make_issue("critical", "No DMARC record found")],
        }
        mx = {"found": False, "records": [], "issues": []}
        grade = mailvet.scoring.calculate_grade(spf, dkim, dmarc, mx)
        self.assertEqual(grade, {"grade": "F", "score": 0})
        recommendations = mailvet.scoring.generate_recommendations(spf, dkim, dmarc, mx)
        self.assertEqual(
            recommendations,
            [
                "Add an SPF record to specify authorized email senders",
                "Add a DMARC record to define your email authentication policy",
                "Configure DKIM signing for your email service",
            ],
        )

    def testRecommendationOrder(self):
        """Recommendations are sorted by priority"""
        results = good_results()
        results["spf"]["mechanism"] = "~all"
        results["dmarc"]["policy"] = "none"
        results["dmarc"]["reporting_enabled"] = False
        results["dkim"]["selectors"][0]["key_length"] = 1024
        recommendations = mailvet.scoring.generate_recommendations(
            results["spf"],
            results["dkim"],
            results["dmarc"],
            results["mx"],
            bimi={"found": False, "issues": []},
            mta_sts={"found": False, "issues": []},
            tls_rpt={"found": False, "issues": []},
            dnssec={"found": False, "enabled": False, "issues": []},
        )
        self.assertEqual(
            recommendations,
            [
                "Upgrade DMARC policy from none to quarantine or reject",
                "Upgrade DKIM keys to 2048-bit for better security",
                "Consider changing SPF from ~all (softfail) to -all (hardfail)",
                "Add DMARC reporting (rua=) to monitor authentication failures",
                "Add MTA-STS to enforce TLS for incoming mail",
                "Add TLS-RPT to receive TLS connection failure reports",
                "Enable DNSSEC to protect your DNS records against spoofing",
            ],
        )

    def testEnabledChecks(self):
        self.assertEqual(mailvet.get_enabled_checks(), mailvet._constants.CHECK_NAMES)
        self.assertEqual(
            mailvet.get_enabled_checks(checks=["SPF", "mta-sts", "tlsrpt"]),
            ["spf", "mta_sts", "tls_rpt"],
        )
        self.assertNotIn("dnssec", mailvet.get_enabled_checks(skip_checks=["dnssec"]))
        with self.assertRaises(ValueError):
            mailvet.get_enabled_checks(skip_checks=["starttls"])

    async def testAnalyzeDomain(self):
        mocks = self.patchChecks()
        results = await mailvet.analyze_domain("Example.com")
        self.assertEqual(results["domain"], "example.com")
        self.assertEqual(results["grade"], "A")
        self.assertEqual(results["score"], 100)
        self.assertTrue(results["timestamp"].endswith("Z"))
        self.assertTrue(results["arc"]["ready"])
        self.assertEqual(results["recommendations"], [])
        self.assertNotIn("error", results)
        for mock in mocks.values():
            mock.assert_awaited_once()

    async def testInvalidDomain(self):
        mocks = self.patchChecks()
        results = await mailvet.analyze_domain("invalid_domain.com")
        self.assertEqual(results["grade"], "F")
        self.assertEqual(results["score"], 0)
        self.assertEqual(
            results["error"], 'Invalid domain format: "invalid_domain.com"'
        )
        mocks["spf"].assert_not_awaited()

    async def testMalformedURLDomain(self):
        """A URL with an unbalanced IPv6 bracket is an invalid domain"""
        mocks = self.patchChecks()
        results = await mailvet.analyze_domain("https://[example.com/")
        self.assertEqual(results["grade"], "F")
        self.assertEqual(results["score"], 0)
        self.assertEqual(results["error"], 'Invalid domain format: "[example.com"')
        mocks["spf"].assert_not_awaited()

    async def testFailedCheckIsIsolated(self):
        """A check that raises does not stop the other checks"""
        self.patchChecks(spf=DNSException("SERVFAIL"))
        results = await mailvet.analyze_domain("example.com")
        self.assertFalse(results["spf"]["found"])
        self.assertEqual(messages(results["spf"]), ["SPF check failed: SERVFAIL"])
        self.assertEqual(results["spf"]["issues"][0]["severity"], "high")
        self.assertEqual(results["error"], "SPF: SERVFAIL")
        self.assertTrue(results["dkim"]["found"])
        self.assertTrue(results["dmarc"]["found"])
        self.assertEqual(results["score"], 72)
        self.assertEqual(results["grade"], "C")
        self.assertEqual(
            results["recommendations"][0],
            "Add an SPF record to specify authorized email senders",
        )

    async def testCheckTimeout(self):
        async def slow_check(*args, **kwargs):
            await asyncio.sleep(5)

        self.patchChecks(dnssec=slow_check)
        results = await mailvet.analyze_domain("example.com", timeout=0.05)
        self.assertFalse(results["dnssec"]["found"])
        self.assertFalse(results["dnssec"]["enabled"])
        self.assertEqual(
            messages(results["dnssec"]),
            ["DNSSEC check failed: timed out after 0.05 seconds"],
        )
        self.assertEqual(results["error"], "DNSSEC: timed out after 0.05 seconds")
        self.assertTrue(results["spf"]["found"])

    async def testSkippedChecks(self):
        mocks = self.patchChecks()
        results = await mailvet.analyze_domain(
            "example.com", skip_checks=["spf", "bimi", "arc"]
        )
        self.assertEqual(results["spf"], {"found": False, "issues": []})
        self.assertIsNone(results["bimi"])
        self.assertIsNone(results["arc"])
        mocks["spf"].assert_not_awaited()
        mocks["bimi"].assert_not_awaited()

        with self.assertRaises(ValueError):
            await mailvet.analyze_domain("example.com", checks=["foo"])

    async def testBIMIRequiresDMARCEnforcement(self):
        dmarc = good_results()["dmarc"]
        dmarc["policy"] = "none"
        self.patchChecks(dmarc=dmarc)
        results = await mailvet.analyze_domain("example.com")
        self.assertIn(
            "BIMI requires DMARC policy of quarantine or reject",
            messages(results["bimi"]),
        )

        self.patchChecks(dmarc={"found": False, "issues": []})
        results = await mailvet.analyze_domain("example.com")
        self.assertIn(
            "BIMI requires DMARC to be configured", messages(results["bimi"])
        )

    async def testMTASTSMXCoverage(self):
        mta_sts = good_results()["mta_sts"]
        mta_sts["policy"]["mx"] = ["mx1.example.com"]
        self.patchChecks(mta_sts=mta_sts)
        results = await mailvet.analyze_domain("example.com")
        self.assertEqual(
            messages(results["mta_sts"]),
            ['MX host "mx2.example.com" not covered by MTA-STS policy'],
        )
        self.assertEqual(results["mta_sts"]["issues"][0]["severity"], "high")

    async def testAnalyzeMultiple(self):
        self.patchChecks()
        domains = ["a.example.com", "b.example.com", "c.example.com"]
        with patch.object(mailvet.DNS_CACHE, "clear") as clear:
            results = await mailvet.analyze_multiple(domains, concurrency=2)
        self.assertEqual([r["domain"] for r in results], domains)
        self.assertEqual(clear.call_count, 2)

        with self.assertRaises(ValueError):
            await mailvet.analyze_multiple(domains, concurrency=0)
        with self.assertRaises(ValueError):
            await mailvet.analyze_multiple(domains, skip_checks=["foo"])

    async def testAnalyzeMultipleIsolatesErrors(self):
        """One domain's unexpected error does not stop the batch"""
        analyze = AsyncMock(side_effect=RuntimeError("boom"))
        with patch("mailvet.analyze_domain", analyze):
            results = await mailvet.analyze_multiple(["Example.com", "example.net"])
        self.assertEqual(len(results), 2)
        self.assertEqual(results[0]["domain"], "Example.com")
        self.assertEqual(results[0]["grade"], "F")
        self.assertEqual(results[0]["error"], "boom")

    async def testAnalyzeMultipleMalformedURL(self):
        """A URL the parser rejects is graded F without stopping the batch"""
        self.patchChecks()
        results = await mailvet.analyze_multiple(
            ["https://[example.com/", "example.org"]
        )
        self.assertEqual([r["grade"] for r in results], ["F", "A"])
        self.assertEqual(results[0]["domain"], "[example.com")
        self.assertEqual(results[1]["domain"], "example.org")

    async def testOutput(self):
        self.patchChecks()
        results = await mailvet.analyze_multiple(["example.com", "example.net"])
        csv = mailvet.results_to_csv(results)
        lines = csv.splitlines()
        self.assertTrue(lines[0].startswith("domain,grade,score,spf_found"))
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[1].startswith("example.com,A,100,True"))

        self.assertIn('"domain": "example.com"', mailvet.results_to_json(results[0]))

    def testReadDomainsFile(self):
        with tempfile.NamedTemporaryFile("w", suffix=".txt", delete=False) as f:
            f.write("# domains\nexample.com\n\nexample.net,Example Inc.\n")
        try:
            domains = mailvet._cli._read_domains_file(f.name)
        finally:
            os.remove(f.name)
        self.assertEqual(domains, ["example.com", "example.net"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
