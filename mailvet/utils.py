# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional, TypedDict
from collections.abc import Sequence
from urllib.parse import urlparse

import dns.asyncresolver
import dns.exception
import dns.resolver
from dns.nameserver import Nameserver
import publicsuffixlist
from expiringdict import ExpiringDict

from mailvet._constants import (
    DEFAULT_DNS_TIMEOUT,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
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

WSP_REGEX = r"[ \t]"
MAILTO_REGEX_STRING = (
    r"^(mailto):([\w\-!#$%&'*+-/=?^_`{|}~]"
    r"[\w\-.!#$%&'*+-/=?^_`{|}~]*@[\w\-.]+\.[\w\-]+)(!\w+)?"
)
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
MAILTO_REGEX = re.compile(MAILTO_REGEX_STRING, re.IGNORECASE)
DOMAIN_LABEL_REGEX = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$", re.IGNORECASE)
TAG_VALUE_PAIR_REGEX = re.compile(r"^([a-zA-Z0-9_]+)\s*=\s*(.*)$")
PSL = publicsuffixlist.PublicSuffixList()

SEVERITIES = ["critical", "high", "medium", "low", "info"]


class _IssueOptionalFields(TypedDict, total=False):
    recommendation: str


class Issue(_IssueOptionalFields):
    severity: str
    message: str


class MXRecord(TypedDict):
    exchange: str
    priority: int


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout):
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, error)


class DNSCache:
    """
    A TTL cache of DNS answers keyed by record type and domain

    Entries expire on their own after ``max_age_seconds``, but batch scans
    call :meth:`clear` at each window boundary instead of relying on expiry.
    """

    def __init__(
        self,
        *,
        max_len: int = DNS_CACHE_MAX_LEN,
        max_age_seconds: float = DNS_CACHE_MAX_AGE_SECONDS,
    ):
        self._entries = ExpiringDict(max_len=max_len, max_age_seconds=max_age_seconds)

    @staticmethod
    def _key(record_type: str, domain: str) -> tuple[str, str]:
        return record_type.upper(), domain.lower()

    def get(self, record_type: str, domain: str):
        return self._entries.get(self._key(record_type, domain))

    def set(self, record_type: str, domain: str, value: list) -> None:
        self._entries[self._key(record_type, domain)] = value

    def clear(self) -> None:
        logging.debug("Clearing the DNS cache")
        self._entries.clear()

    def __contains__(self, key: tuple[str, str]) -> bool:
        return self._key(*key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


DNS_CACHE = DNSCache()


def make_issue(
    severity: str, message: str, recommendation: Optional[str] = None
) -> Issue:
    """
    Creates an issue dictionary

    Args:
        severity (str): One of ``critical``, ``high``, ``medium``, ``low``
                        or ``info``
        message (str): What was found
        recommendation (str): How to fix it

    Returns:
        dict: An issue
    """
    if severity not in SEVERITIES:
        raise ValueError(f"Invalid severity: {severity}")
    issue: Issue = {"severity": severity, "message": message}
    if recommendation is not None:
        issue["recommendation"] = recommendation
    return issue


def get_base_domain(domain: str) -> str:
    """
    Gets the base domain name for the given domain

    .. note::
        Results are based on a list of public domain suffixes at
        https://publicsuffix.org/list/public_suffix_list.dat.

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: The base domain of the given domain

    """
    domain = normalize_domain(domain)
    return PSL.privatesuffix(domain) or domain


def _to_ascii(domain: str) -> str:
    labels = []
    for label in domain.split("."):
        if label.isascii():
            labels.append(label)
            continue
        try:
            labels.append(label.encode("idna").decode("ascii"))
        except UnicodeError:
            labels.append(label)
    return ".".join(labels)


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain for DNS lookups

    Removes zero-width characters, a URL scheme, a path, a port, a trailing
    dot and whitespace, lowercases the domain, and converts international
    labels to their ASCII-compatible form

    Args:
        domain (str): A domain, subdomain, or URL

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    domain = domain.strip().lower()
    if domain.startswith("http://") or domain.startswith("https://"):
        try:
            netloc = urlparse(domain).netloc
        except ValueError:
            # Unbalanced brackets are not a valid IPv6 host
            netloc = ""
        domain = netloc or domain.split("://", 1)[1]
    domain = domain.split("/")[0]
    domain = domain.split(":")[0]
    domain = domain.rstrip(".")
    domain = re.sub(r"\s", "", domain)
    if not domain.isascii():
        domain = _to_ascii(domain)
    return domain


def is_valid_domain(domain: str) -> bool:
    """
    Checks if a normalized domain is syntactically valid

    Args:
        domain (str): A normalized domain

    Returns:
        bool: ``True`` if the domain is 1-253 characters long, has at least
        one dot, and every label is 1-63 letters, digits, and hyphens, with
        no leading or trailing hyphen
    """
    if not domain or len(domain) > 253:
        return False
    if "." not in domain:
        return False
    for label in domain.split("."):
        if len(label) == 0 or len(label) > 63:
            return False
        if DOMAIN_LABEL_REGEX.match(label) is None:
            return False
    return True


async def query_dns(
    domain: str,
    record_type: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    _attempt: int = 0,
) -> list[str]:
    """
    Queries DNS

    Args:
        domain (str): The domain or subdomain to query about
        record_type (str): The record type to query for
        nameservers (list): A list of one or more nameservers to use
        resolver (dns.asyncresolver.Resolver): A resolver object to use for
                                               DNS requests
        timeout (float): Sets the DNS timeout in seconds
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: A list of answers

    Raises:
        :exc:`dns.resolver.NXDOMAIN`
        :exc:`dns.resolver.NoAnswer`
        :exc:`dns.exception.DNSException`
    """
    domain = normalize_domain(domain)
    record_type = record_type.upper()
    if not resolver:
        resolver = dns.asyncresolver.Resolver()
        timeout = float(timeout)
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
    logging.debug(f"Querying {record_type} records for {domain}")
    try:
        answers = await resolver.resolve(domain, record_type, lifetime=timeout)
    except dns.resolver.LifetimeTimeout as e:
        _attempt += 1
        if _attempt > timeout_retries:
            raise e
        return await query_dns(
            domain,
            record_type,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
            _attempt=_attempt,
        )
    if record_type == "TXT":
        resource_records = [b"".join(r.strings) for r in answers if r.strings]
        records = []
        for r in resource_records:
            try:
                r = r.decode()
            except UnicodeDecodeError:
                r = "Undecodable characters"
            records.append(r)
    else:
        records = [r.to_text().rstrip(".") for r in answers]

    return records


async def resolve_txt(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    cache: Optional[DNSCache] = None,
) -> list[str]:
    """
    Queries DNS for TXT records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.asyncresolver.Resolver): A resolver object to use for
                                               DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        cache (DNSCache): Cache storage

    Returns:
        list: A list of TXT records, empty if the domain or record does not
        exist

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    if cache is None:
        cache = DNS_CACHE
    records = cache.get("TXT", domain)
    if isinstance(records, list):
        return records
    try:
        records = await query_dns(
            domain,
            "TXT",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        logging.debug(f"No TXT records found at {domain}")
        records = []
    except Exception as error:
        raise DNSException(error)
    cache.set("TXT", domain, records)
    return records


async def resolve_mx(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = 2,
    cache: Optional[DNSCache] = None,
) -> list[MXRecord]:
    """
    Queries DNS for a list of Mail Exchange hosts

    A null MX record (RFC 7505) is returned as a single record with an
    empty ``exchange``

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.asyncresolver.Resolver): A resolver object to use for
                                               DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        cache (DNSCache): Cache storage

    Returns:
        list: A list of ``dicts``; each containing an ``exchange`` and a
        ``priority``, sorted by priority

    Raises:
        :exc:`mailvet.utils.DNSException`
    """
    domain = normalize_domain(domain)
    if cache is None:
        cache = DNS_CACHE
    hosts = cache.get("MX", domain)
    if isinstance(hosts, list):
        return hosts
    hosts = []
    try:
        answers = await query_dns(
            domain,
            "MX",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        for record in answers:
            record = record.split(" ")
            priority = int(record[0])
            exchange = record[1].rstrip(".").strip().lower()
            hosts.append({"exchange": exchange, "priority": priority})
        hosts = sorted(hosts, key=lambda h: (h["priority"], h["exchange"]))
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        logging.debug(f"No MX records found at {domain}")
    except Exception as error:
        raise DNSException(error)
    cache.set("MX", domain, hosts)
    return hosts


def parse_record_tags(record: str) -> dict[str, str]:
    """
    Parses the ``tag=value`` pairs of a ``;`` separated record

    Tag names are lowercased. Parts that are not tag-value pairs are skipped.

    Args:
        record (str): A DMARC, DKIM, BIMI, MTA-STS or TLS-RPT record

    Returns:
        dict: Tag values by tag name
    """
    tags = {}
    for part in re.split(r"\s*;\s*", record):
        part = part.strip()
        if not part:
            continue
        match = TAG_VALUE_PAIR_REGEX.match(part)
        if match:
            tags[match.group(1).lower()] = match.group(2).strip()
    return tags


def extract_tag(record: str, tag: str) -> Optional[str]:
    """Returns the value of a tag in a record, or ``None``"""
    match = re.search(rf"(?:^|;|\s){re.escape(tag)}=([^;\s]+)", record, re.IGNORECASE)
    if match is None:
        return None
    return match.group(1).strip()


def split_uris(value: Optional[str]) -> list[str]:
    """Splits a comma separated list of URIs"""
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def parse_mailto_uri(uri: str) -> Optional[str]:
    """
    Extracts the email address from a ``mailto:`` URI

    Query parameters and RFC 8460 size limits (e.g. ``!10m``) are removed

    Args:
        uri (str): A URI

    Returns:
        str: The email address, or ``None`` if the URI is not a valid
        ``mailto:`` URI
    """
    uri = uri.split("?")[0]
    match = MAILTO_REGEX.match(uri)
    if match is None:
        return None
    return match.group(2)


def is_valid_url(url: str, *, require_https: bool = False) -> bool:
    """Checks that a string is an absolute HTTP(S) URL"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if not parsed.netloc:
        return False
    if require_https:
        return parsed.scheme == "https"
    return parsed.scheme in ["http", "https"]
