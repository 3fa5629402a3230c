# -*- coding: utf-8 -*-
"""DNSSEC tests"""

from __future__ import annotations

import logging
from typing import Optional, TypedDict
from collections.abc import Sequence

import dns.asyncquery
import dns.asyncresolver
import dns.dnssec
import dns.exception
import dns.message
import dns.name
import dns.rdatatype
import dns.resolver
from dns.nameserver import Nameserver
from dns.rdatatype import RdataType

from mailvet._constants import DEFAULT_DNS_TIMEOUT
from mailvet.utils import DNSException, Issue, make_issue, normalize_domain, query_dns

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

# RFC 8624
DNSSEC_ALGORITHMS = {
    1: ("RSAMD5", "deprecated"),
    3: ("DSA/SHA1", "deprecated"),
    5: ("RSASHA1", "weak"),
    6: ("DSA-NSEC3-SHA1", "deprecated"),
    7: ("RSASHA1-NSEC3-SHA1", "weak"),
    8: ("RSASHA256", "acceptable"),
    10: ("RSASHA512", "strong"),
    13: ("ECDSAP256SHA256", "strong"),
    14: ("ECDSAP384SHA384", "strong"),
    15: ("ED25519", "strong"),
    16: ("ED448", "strong"),
}

DS_DIGEST_TYPES = {
    1: ("SHA-1", "weak"),
    2: ("SHA-256", "strong"),
    3: ("GOST R 34.11-94", "acceptable"),
    4: ("SHA-384", "strong"),
}

DNSKEY_ZONE_KEY_FLAGS = 256
DNSKEY_SEP_KEY_FLAGS = 257


class DSRecord(TypedDict):
    key_tag: int
    algorithm: int
    algorithm_name: str
    strength: Optional[str]
    digest_type: int
    digest_type_name: str
    digest_strength: Optional[str]
    digest: str


class DNSKEYRecord(TypedDict):
    flags: int
    protocol: int
    algorithm: int
    algorithm_name: str
    key_type: str
    public_key: str


class DSRecords(TypedDict):
    found: bool
    records: list[DSRecord]


class DNSKEYRecords(TypedDict):
    found: bool
    records: list[DNSKEYRecord]
    ksk_count: int
    zsk_count: int


class _DNSSECResultOptionalFields(TypedDict, total=False):
    ds: DSRecords
    dnskey: DNSKEYRecords
    chain_valid: bool


class DNSSECResult(_DNSSECResultOptionalFields):
    found: bool
    enabled: bool
    issues: list[Issue]


def _algorithm_name(algorithm: int) -> str:
    if algorithm in DNSSEC_ALGORITHMS:
        return DNSSEC_ALGORITHMS[algorithm][0]
    return f"Unknown ({algorithm})"


def _algorithm_strength(algorithm: int) -> Optional[str]:
    if algorithm in DNSSEC_ALGORITHMS:
        return DNSSEC_ALGORITHMS[algorithm][1]
    return None


def parse_ds_record(record: str) -> DSRecord:
    """
    Parses the text form of a DS record

    Args:
        record (str): A DS record, e.g. ``2371 13 2 1F987CC6583E9...``

    Returns:
        dict: The parsed DS record

    Raises:
        :exc:`ValueError`
    """
    parts = record.split()
    if len(parts) < 4:
        raise ValueError(f"Malformed DS record: {record}")
    algorithm = int(parts[1])
    digest_type = int(parts[2])
    digest_name, digest_strength = DS_DIGEST_TYPES.get(
        digest_type, (f"Unknown ({digest_type})", None)
    )
    return {
        "key_tag": int(parts[0]),
        "algorithm": algorithm,
        "algorithm_name": _algorithm_name(algorithm),
        "strength": _algorithm_strength(algorithm),
        "digest_type": digest_type,
        "digest_type_name": digest_name,
        "digest_strength": digest_strength,
        "digest": "".join(parts[3:]).upper(),
    }


def parse_dnskey_record(record: str) -> DNSKEYRecord:
    """
    Parses the text form of a DNSKEY record

    Raises:
        :exc:`ValueError`
    """
    parts = record.split()
    if len(parts) < 4:
        raise ValueError(f"Malformed DNSKEY record: {record}")
    flags = int(parts[0])
    algorithm = int(parts[2])
    key_type = "unknown"
    if flags == DNSKEY_SEP_KEY_FLAGS:
        key_type = "KSK"
    elif flags == DNSKEY_ZONE_KEY_FLAGS:
        key_type = "ZSK"
    return {
        "flags": flags,
        "protocol": int(parts[1]),
        "algorithm": algorithm,
        "algorithm_name": _algorithm_name(algorithm),
        "key_type": key_type,
        "public_key": "".join(parts[3:]),
    }


async def _query_records(
    domain: str,
    record_type: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> list[str]:
    try:
        return await query_dns(
            domain,
            record_type,
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        logging.debug(f"No {record_type} records found at {domain}")
        return []


async def validate_dnskey_rrset(
    domain: str,
    ds_records: list[DSRecord],
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
) -> bool:
    """
    Checks that a published DS record matches a DNSKEY of the domain, and
    that the DNSKEY RRset carries a valid signature

    Args:
        domain (str): The domain to check
        ds_records (list): The parsed DS records of the domain
        nameservers (list): A list of nameservers to query
        timeout (float): Timeout in seconds

    Returns:
        bool: ``True`` if the chain from the DS records to the signed
        DNSKEY RRset validates
    """
    if nameservers is None:
        nameservers = dns.asyncresolver.Resolver().nameservers
    name = dns.name.from_text(f"{domain}.")
    request = dns.message.make_query(name, dns.rdatatype.DNSKEY, want_dnssec=True)
    for nameserver in nameservers:
        try:
            response = await dns.asyncquery.tcp(
                request, str(nameserver), timeout=timeout
            )
        except (dns.exception.DNSException, OSError) as e:
            logging.debug(f"DNSKEY query error: {e}")
            continue
        rrset = None
        rrsig = None
        for rset in response.answer:
            if rset.rdtype == RdataType.RRSIG:
                rrsig = rset
            elif rset.rdtype == RdataType.DNSKEY:
                rrset = rset
        if rrset is None or rrsig is None:
            logging.debug(f"No signed DNSKEY RRset found at {domain}")
            return False
        digests = {(ds["digest_type"], ds["digest"]) for ds in ds_records}
        ds_match = False
        for key in rrset:
            for digest_type, digest in digests:
                try:
                    ds = dns.dnssec.make_ds(name, key, digest_type)
                except dns.exception.DNSException:
                    continue
                if ds.digest.hex().upper() == digest:
                    ds_match = True
        if not ds_match:
            logging.debug(f"No DS record of {domain} matches a DNSKEY")
            return False
        try:
            dns.dnssec.validate(rrset, rrsig, {name: rrset})
        except dns.dnssec.ValidationFailure as e:
            logging.debug(f"DNSKEY RRSIG validation failed for {domain}: {e}")
            return False
        logging.debug(f"Found a signed DNSKEY RRset matching a DS record at {domain}")
        return True
    return False


def _ds_issues(ds_records: list[DSRecord]) -> list[Issue]:
    issues = []
    for ds in ds_records:
        if ds["strength"] == "deprecated":
            issues.append(
                make_issue(
                    "critical",
                    f"DS record uses deprecated algorithm: {ds['algorithm_name']}",
                    "Migrate to a stronger algorithm (ECDSAP256SHA256, "
                    "ED25519, or RSASHA256 minimum)",
                )
            )
        elif ds["strength"] == "weak":
            issues.append(
                make_issue(
                    "high",
                    f"DS record uses weak algorithm: {ds['algorithm_name']}",
                    "Consider migrating to ECDSAP256SHA256 or ED25519 for "
                    "better security",
                )
            )
        if ds["digest_strength"] == "weak":
            issues.append(
                make_issue(
                    "medium",
                    f"DS record uses weak digest type: {ds['digest_type_name']}",
                    "Use SHA-256 (type 2) or SHA-384 (type 4) for DS digest",
                )
            )
    return issues


def _dnskey_issues(dnskey_records: list[DNSKEYRecord]) -> list[Issue]:
    issues = []
    if len(dnskey_records) == 0:
        return issues
    key_types = [key["key_type"] for key in dnskey_records]
    if "KSK" not in key_types:
        issues.append(
            make_issue(
                "high",
                "No KSK (Key Signing Key) found in DNSKEY records",
                "Ensure a KSK (flags=257) is published for DNSSEC chain of trust",
            )
        )
    if "ZSK" not in key_types:
        issues.append(
            make_issue(
                "medium",
                "No ZSK (Zone Signing Key) found in DNSKEY records",
                "A ZSK (flags=256) is typically used for signing zone records",
            )
        )
    for key in dnskey_records:
        strength = _algorithm_strength(key["algorithm"])
        if strength == "deprecated":
            issues.append(
                make_issue(
                    "critical",
                    "DNSKEY uses deprecated algorithm: "
                    f"{key['algorithm_name']} ({key['key_type']})",
                    "Migrate to a stronger algorithm immediately",
                )
            )
        elif strength == "weak":
            issues.append(
                make_issue(
                    "high",
                    "DNSKEY uses weak algorithm: "
                    f"{key['algorithm_name']} ({key['key_type']})",
                    "Plan migration to ECDSAP256SHA256 or ED25519",
                )
            )
    return issues


def _chain_consistency_issues(
    ds_records: list[DSRecord], dnskey_records: list[DNSKEYRecord]
) -> list[Issue]:
    issues = []
    if len(ds_records) == 0 and len(dnskey_records) > 0:
        issues.append(
            make_issue(
                "high",
                "DNSKEY records exist but no DS record found at parent zone",
                "Publish DS record at your domain registrar to complete "
                "DNSSEC chain",
            )
        )
    if len(ds_records) > 0 and len(dnskey_records) > 0:
        ksk_algorithms = {
            key["algorithm"] for key in dnskey_records if key["key_type"] == "KSK"
        }
        ds_algorithms = sorted({ds["algorithm"] for ds in ds_records})
        for algorithm in ds_algorithms:
            if algorithm not in ksk_algorithms:
                issues.append(
                    make_issue(
                        "medium",
                        f"DS record algorithm ({_algorithm_name(algorithm)}) "
                        "may not match any KSK",
                        "Verify DS record matches current KSK after key rotation",
                    )
                )
    return issues


async def check_dnssec(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
) -> DNSSECResult:
    """
    Checks the DNSSEC configuration of a domain

    Args:
        domain (str): The domain to check
        nameservers (list): A list of nameservers to query
        timeout (float): Timeout in seconds
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: a ``dict`` with the following keys:

                     - ``found`` - Same as ``enabled``
                     - ``enabled`` - ``True`` if DS or DNSKEY records exist
                     - ``ds`` - The DS records
                     - ``dnskey`` - The DNSKEY records, with KSK and ZSK
                       counts
                     - ``chain_valid`` - ``True`` if the DS records match a
                       KSK and the DNSKEY RRset signature validates
                     - ``issues`` - A list of issues

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking DNSSEC on {domain}")
    try:
        ds_answers = await _query_records(
            domain,
            "DS",
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        dnskey_answers = await _query_records(
            domain,
            "DNSKEY",
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except dns.resolver.NoNameservers as e:
        # Validating resolvers answer SERVFAIL for bogus signatures
        logging.debug(f"DNSSEC query for {domain} failed: {e}")
        return {
            "found": True,
            "enabled": True,
            "chain_valid": False,
            "issues": [
                make_issue(
                    "critical",
                    "DNSSEC validation failed (SERVFAIL) - DNS responses are "
                    "being rejected",
                    "Check DNSSEC configuration and ensure signatures are "
                    "valid and not expired",
                )
            ],
        }
    except dns.exception.DNSException as e:
        raise DNSException(e)

    if len(ds_answers) == 0 and len(dnskey_answers) == 0:
        return {
            "found": False,
            "enabled": False,
            "issues": [
                make_issue(
                    "medium",
                    "DNSSEC is not enabled for this domain",
                    "Consider enabling DNSSEC to protect against DNS spoofing "
                    "and cache poisoning",
                )
            ],
        }

    issues = []
    ds_records = []
    for record in ds_answers:
        try:
            ds_records.append(parse_ds_record(record))
        except ValueError as e:
            logging.debug(str(e))
    dnskey_records = []
    for record in dnskey_answers:
        try:
            dnskey_records.append(parse_dnskey_record(record))
        except ValueError as e:
            logging.debug(str(e))
    ksk_count = len([k for k in dnskey_records if k["key_type"] == "KSK"])
    zsk_count = len([k for k in dnskey_records if k["key_type"] == "ZSK"])

    issues += _ds_issues(ds_records)
    issues += _dnskey_issues(dnskey_records)
    issues += _chain_consistency_issues(ds_records, dnskey_records)

    chain_valid = False
    if len(ds_records) > 0 and ksk_count > 0:
        chain_valid = await validate_dnskey_rrset(
            domain, ds_records, nameservers=nameservers, timeout=timeout
        )
    if not chain_valid and len(ds_records) > 0:
        issues.append(
            make_issue(
                "high",
                "DNSSEC chain may be broken - DS records exist but DNSKEY "
                "configuration appears incomplete",
                "Ensure DNSKEY records are properly published and signed",
            )
        )

    return {
        "found": True,
        "enabled": True,
        "ds": {"found": len(ds_records) > 0, "records": ds_records},
        "dnskey": {
            "found": len(dnskey_records) > 0,
            "records": dnskey_records,
            "ksk_count": ksk_count,
            "zsk_count": zsk_count,
        },
        "chain_valid": chain_valid,
        "issues": issues,
    }
