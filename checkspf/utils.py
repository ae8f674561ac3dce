# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import ipaddress
import logging
import re
import unicodedata
from typing import Optional, TypedDict
from collections.abc import Iterable, Sequence

import dns.exception
import dns.name
import dns.resolver
from dns.nameserver import Nameserver
import publicsuffixlist
import requests
from expiringdict import ExpiringDict

from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    DEFAULT_HTTP_TIMEOUT,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
    DOH_URL,
    USER_AGENT,
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

ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
HOSTNAME_REGEX = re.compile(
    r"^(?=.{1,253}$)([a-z0-9_]([a-z0-9_\-]{0,61}[a-z0-9_])?\.)*"
    r"[a-z0-9_]([a-z0-9\-]{0,61}[a-z0-9])?$",
    re.IGNORECASE,
)
TXT_SEGMENT_REGEX = re.compile(r'"((?:[^"\\]|\\.)*)"')
PSL = publicsuffixlist.PublicSuffixList()

# RFC 8427 / DNS-over-HTTPS JSON record type numbers
DOH_RECORD_TYPES = {"A": 1, "MX": 15, "TXT": 16, "AAAA": 28}


class MXRecord(TypedDict):
    priority: int
    exchange: str


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    kind = "ServFail"
    transient = True

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout):
            if "timeout" in error.kwargs:
                error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, str(error))


class DNSExceptionTimeout(DNSException):
    """Raised when a DNS query times out"""

    kind = "Timeout"


class DNSExceptionServFail(DNSException):
    """Raised when the nameservers fail to answer (SERVFAIL, REFUSED)"""

    kind = "ServFail"


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""

    kind = "NXDOMAIN"
    transient = False


class DNSExceptionNoAnswer(DNSException):
    """Raised when a name exists but has no records of the requested type"""

    kind = "NoAnswer"
    transient = False


class DNSExceptionMalformed(DNSException):
    """Raised when a query or an answer cannot be parsed"""

    kind = "Malformed"
    transient = False


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


def is_public_suffix(domain: str) -> bool:
    """Returns ``True`` if the domain is itself a public suffix (e.g. ``co.uk``)"""
    return PSL.is_public(normalize_domain(domain).rstrip("."))


def is_valid_hostname(domain: str) -> bool:
    """Checks that a string is a syntactically valid DNS host name"""
    return HOSTNAME_REGEX.match(domain.rstrip(".")) is not None


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    # 1. Normalize Unicode (NFC form for consistency)
    domain = unicodedata.normalize("NFC", domain)
    # 2. Remove zero-width and similar hidden chars
    domain = ZERO_WIDTH_RE.sub("", domain)
    # 3. Lowercase for case-insensitivity (domains are case-insensitive)
    return domain.strip().lower()


def normalize_ip_network(value: str) -> str:
    """
    Normalizes an IP address or CIDR network

    Host networks (/32 or /128) are returned as bare addresses, and host bits
    in other networks are cleared.

    Raises:
        ValueError: The value is not an IP address or network
    """
    network = ipaddress.ip_network(value.strip(), strict=False)
    if network.prefixlen == network.max_prefixlen:
        return str(network.network_address)
    return str(network)


def sort_ip_networks(values: Iterable[str]) -> list[str]:
    """De-duplicates and sorts IP addresses and networks, IPv4 first"""

    def sort_key(value: str):
        network = ipaddress.ip_network(value, strict=False)
        return network.version, int(network.network_address), network.prefixlen

    return sorted(set(values), key=sort_key)


def parse_mx_answers(domain: str, answers: Sequence[str]) -> list[MXRecord]:
    """
    Converts ``preference exchange`` answer strings into sorted MX records

    Raises:
        :exc:`checkspf.utils.DNSExceptionMalformed`
    """
    hosts: list[MXRecord] = []
    for answer in answers:
        parts = answer.split()
        if parts == ["0"] or parts == ["0", "."]:
            # RFC 7505 "Null MX"
            logging.debug(f'"No Service" MX record found for {domain}')
            continue
        if len(parts) != 2:
            raise DNSExceptionMalformed(f"Malformed MX answer for {domain}: {answer}")
        try:
            priority = int(parts[0])
        except ValueError:
            raise DNSExceptionMalformed(f"Malformed MX answer for {domain}: {answer}")
        exchange = parts[1].rstrip(".").strip().lower()
        hosts.append({"priority": priority, "exchange": exchange})
    return sorted(hosts, key=lambda h: (h["priority"], h["exchange"]))


def _normalize_dnspython_answer(answers, record_type: str) -> list[str]:
    if record_type == "TXT":
        records = []
        for rdata in answers:
            if not rdata.strings:
                continue
            try:
                records.append(b"".join(rdata.strings).decode())
            except UnicodeDecodeError:
                records.append("Undecodable characters")
        return records
    return list(map(lambda r: r.to_text().rstrip("."), answers))


def _normalize_doh_answer(domain: str, payload: dict, record_type: str) -> list[str]:
    status = payload.get("Status")
    if status == 3:
        raise DNSExceptionNXDOMAIN(f"The domain {domain} does not exist.")
    if status == 1:
        raise DNSExceptionMalformed(f"The query for {domain} was malformed (FORMERR).")
    if status != 0:
        raise DNSExceptionServFail(
            f"The nameservers failed to answer {record_type} for {domain} "
            f"(RCODE {status})."
        )
    records = []
    wanted_type = DOH_RECORD_TYPES[record_type]
    for answer in payload.get("Answer") or []:
        if not isinstance(answer, dict) or answer.get("type") != wanted_type:
            # CNAME and other chained answers
            continue
        data = answer.get("data")
        if not isinstance(data, str):
            raise DNSExceptionMalformed(
                f"Malformed {record_type} answer for {domain}: {data!r}"
            )
        if record_type == "TXT":
            segments = TXT_SEGMENT_REGEX.findall(data)
            if segments:
                data = "".join(segment.replace('\\"', '"') for segment in segments)
            records.append(data)
        else:
            data = data.rstrip(".")
            if record_type in ("A", "AAAA"):
                try:
                    ipaddress.ip_address(data)
                except ValueError:
                    raise DNSExceptionMalformed(
                        f"Malformed {record_type} answer for {domain}: {data!r}"
                    )
            records.append(data)
    return records


class BaseDNSClient:
    """
    Shared query, cache, and retry logic for DNS clients

    Subclasses implement ``_resolve`` for one record type and raise
    :exc:`checkspf.utils.DNSException` subclasses. Answers are cached in an
    :class:`expiringdict.ExpiringDict` owned by the client instance.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
        cache: Optional[ExpiringDict] = None,
        cache_max_len: int = DNS_CACHE_MAX_LEN,
        cache_max_age_seconds: int = DNS_CACHE_MAX_AGE_SECONDS,
    ):
        self.timeout = float(timeout)
        self.timeout_retries = timeout_retries
        if cache is None:
            cache = ExpiringDict(
                max_len=cache_max_len, max_age_seconds=cache_max_age_seconds
            )
        self.cache = cache

    def _resolve(self, domain: str, record_type: str) -> list[str]:
        raise NotImplementedError

    def query(self, domain: str, record_type: str, *, _attempt: int = 0) -> list[str]:
        """
        Queries DNS, retrying transient failures

        Args:
            domain (str): The domain or subdomain to query about
            record_type (str): The record type to query for

        Returns:
            list: A list of answers

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        domain = normalize_domain(domain)
        record_type = record_type.upper()
        cache_key = f"{domain}_{record_type}"
        records = self.cache.get(cache_key)
        if isinstance(records, list):
            return records
        logging.debug(f"Getting {record_type} records for {domain}")
        try:
            records = self._resolve(domain, record_type)
        except DNSException as e:
            if not e.transient:
                raise e
            _attempt += 1
            if _attempt > self.timeout_retries:
                raise e
            logging.debug(
                f"Retrying {record_type} query for {domain} after {e.kind}: {e}"
            )
            return self.query(domain, record_type, _attempt=_attempt)
        self.cache[cache_key] = records
        return records

    def query_txt(self, domain: str) -> list[str]:
        """
        Queries DNS for TXT records

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        return self.query(domain, "TXT")

    def query_a(self, domain: str) -> list[str]:
        """
        Queries DNS for A and AAAA records

        Returns:
            list: A sorted list of IPv4 and IPv6 addresses

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        addresses = []
        for qt in ["A", "AAAA"]:
            try:
                addresses += self.query(domain, qt)
            except DNSExceptionNoAnswer:
                # Sometimes a domain will only have A or AAAA records, but not both
                pass
        for address in addresses:
            try:
                ipaddress.ip_address(address)
            except ValueError:
                raise DNSExceptionMalformed(
                    f"Malformed address answer for {domain}: {address!r}"
                )
        return sorted(addresses)

    def query_mx(self, domain: str) -> list[MXRecord]:
        """
        Queries DNS for a list of Mail Exchange hosts

        Returns:
            list: A list of ``dicts``; each containing a ``priority``
                  integer and an ``exchange`` hostname

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        return parse_mx_answers(domain, self.query(domain, "MX"))


class DNSClient(BaseDNSClient):
    """Queries DNS with dnspython"""

    def __init__(
        self,
        *,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
        **kwargs,
    ):
        BaseDNSClient.__init__(self, **kwargs)
        if not resolver:
            resolver = dns.resolver.Resolver()
            if nameservers is not None:
                resolver.nameservers = nameservers
            resolver.timeout = self.timeout
            resolver.lifetime = self.timeout
        self.resolver = resolver

    def _resolve(self, domain: str, record_type: str) -> list[str]:
        try:
            answers = self.resolver.resolve(domain, record_type, lifetime=self.timeout)
        except dns.resolver.NXDOMAIN:
            raise DNSExceptionNXDOMAIN(f"The domain {domain} does not exist.")
        except dns.resolver.NoAnswer:
            raise DNSExceptionNoAnswer(
                f"The domain {domain} does not have any {record_type} records."
            )
        except dns.exception.Timeout as e:
            raise DNSExceptionTimeout(e)
        except dns.resolver.NoNameservers as e:
            raise DNSExceptionServFail(e)
        except (
            dns.exception.FormError,
            dns.exception.SyntaxError,
            dns.name.NameTooLong,
        ) as e:
            raise DNSExceptionMalformed(e)
        except dns.exception.DNSException as e:
            raise DNSException(e)
        return _normalize_dnspython_answer(answers, record_type)


class DoHDNSClient(BaseDNSClient):
    """Queries a DNS-over-HTTPS JSON API (``application/dns-json``)"""

    def __init__(
        self,
        *,
        url: str = DOH_URL,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
        **kwargs,
    ):
        BaseDNSClient.__init__(self, **kwargs)
        self.url = url
        self.http_timeout = http_timeout
        if session is None:
            session = requests.Session()
            session.headers.update(
                {"User-Agent": USER_AGENT, "Accept": "application/dns-json"}
            )
        self.session = session

    def _resolve(self, domain: str, record_type: str) -> list[str]:
        params = {"name": domain, "type": record_type}
        try:
            response = self.session.get(
                self.url, params=params, timeout=self.http_timeout
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise DNSExceptionTimeout(e)
        except requests.exceptions.RequestException as e:
            raise DNSExceptionServFail(e)
        try:
            payload = response.json()
        except ValueError as e:
            raise DNSExceptionMalformed(f"Invalid DNS-over-HTTPS response: {e}")
        if not isinstance(payload, dict):
            raise DNSExceptionMalformed("Invalid DNS-over-HTTPS response")
        records = _normalize_doh_answer(domain, payload, record_type)
        if len(records) == 0:
            raise DNSExceptionNoAnswer(
                f"The domain {domain} does not have any {record_type} records."
            )
        return records
