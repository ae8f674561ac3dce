# -*- coding: utf-8 -*-
"""Flattening of nested SPF include chains into literal IP addresses"""

from __future__ import annotations

import concurrent.futures
import ipaddress
import logging
import time
from typing import Literal, Optional, TypedDict
from collections.abc import Iterable

from checkspf._constants import (
    FLATTEN_MAX_DEPTH,
    FLATTEN_MAX_WORKERS,
    FLATTEN_TIMEOUT,
)
from checkspf.spf import (
    SPF_MECHANISM_TYPES,
    SPFDepthExceeded,
    SPFError,
    SPFIncludeLoop,
    SPFTimeout,
    get_spf_record_string,
    mechanism_to_string,
    split_cidr,
    tokenize_spf_record,
)
from checkspf.utils import (
    BaseDNSClient,
    DNSClient,
    DNSException,
    normalize_domain,
    normalize_ip_network,
    sort_ip_networks,
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

# RFC 7208 § 4.6.4
MAX_MX_EXCHANGES = 10

FlatteningStatus = Literal["safe", "partial"]


class DomainFlatteningResult(TypedDict):
    ips: list[str]
    nested_includes: list[str]
    errors: list[str]
    dns_lookups: int
    unflattened: list[str]


class FlatteningResult(TypedDict):
    resolved_domains: dict[str, DomainFlatteningResult]
    total_ips: int
    errors: list[str]
    status: FlatteningStatus


class _DomainResult(object):
    """Mutable accumulator for a single resolution branch"""

    def __init__(self):
        self.ips = set()
        self.nested_includes = []
        self.errors = []
        self.dns_lookups = 0
        self.unflattened = []

    def add_error(self, domain: str, error: Exception):
        self.errors.append(f"{domain}: {error}")

    def merge(self, child: _DomainResult):
        self.ips.update(child.ips)
        self.nested_includes += child.nested_includes
        self.errors += child.errors
        self.dns_lookups += child.dns_lookups
        self.unflattened += child.unflattened

    def to_dict(self) -> DomainFlatteningResult:
        return {
            "ips": sort_ip_networks(self.ips),
            "nested_includes": self.nested_includes,
            "errors": self.errors,
            "dns_lookups": self.dns_lookups,
            "unflattened": self.unflattened,
        }


def _apply_cidr(
    addresses: Iterable[str], cidr4: Optional[str], cidr6: Optional[str]
) -> list[str]:
    networks = []
    for address in addresses:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            raise SPFError(f"{address!r} is not an IP address")
        prefix = cidr4 if ip.version == 4 else cidr6
        if prefix is None:
            networks.append(str(ip))
            continue
        try:
            networks.append(normalize_ip_network(f"{ip}/{prefix}"))
        except ValueError:
            raise SPFError(f"/{prefix} is not a valid prefix length for {ip}")
    return networks


class SPFFlattener(object):
    """
    Resolves SPF records into literal IP addresses

    Includes found at the same level are resolved concurrently on a bounded
    thread pool. Cycle detection uses the active include path of each branch,
    so a domain may be included from two unrelated branches, but never from
    itself.
    """

    def __init__(
        self,
        dns_client: Optional[BaseDNSClient] = None,
        *,
        recursive: bool = True,
        max_depth: int = FLATTEN_MAX_DEPTH,
        timeout: float = FLATTEN_TIMEOUT,
        max_workers: int = FLATTEN_MAX_WORKERS,
    ):
        """
        Args:
            dns_client: Queries DNS; a :class:`checkspf.utils.DNSClient` is
                        used when omitted
            recursive (bool): Resolve nested includes
            max_depth (int): The deepest level of nested includes to resolve
            timeout (float): Wall-clock seconds allowed for a whole flatten
            max_workers (int): The maximum number of resolver threads
        """
        if max_depth < 0:
            raise ValueError("max_depth must not be negative")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if dns_client is None:
            dns_client = DNSClient()
        self.dns_client = dns_client
        self.recursive = recursive
        self.max_depth = max_depth
        self.timeout = float(timeout)
        self.max_workers = max_workers

    def _new_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="checkspf"
        )

    def _timeout_result(self, domain: str) -> _DomainResult:
        result = _DomainResult()
        result.add_error(
            domain,
            SPFTimeout(f"Timed out after {self.timeout:g} seconds before resolving"),
        )
        return result

    def _resolve_branch(
        self,
        domain: str,
        active_path: tuple[str, ...],
        depth: int,
        deadline: float,
        executor: concurrent.futures.ThreadPoolExecutor,
    ) -> _DomainResult:
        # Failures stay in the result of the domain they belong to
        try:
            return self._resolve(domain, active_path, depth, deadline, executor)
        except Exception as error:
            logging.warning(f"Unexpected error while resolving {domain}: {error}")
            result = _DomainResult()
            result.add_error(domain, error)
            return result

    def _submit_children(
        self,
        domains: list[str],
        active_path: tuple[str, ...],
        depth: int,
        deadline: float,
        executor: concurrent.futures.ThreadPoolExecutor,
    ) -> list[tuple[str, Optional[concurrent.futures.Future]]]:
        pending = []
        for domain in domains:
            try:
                future = executor.submit(
                    self._resolve_branch,
                    domain,
                    active_path,
                    depth,
                    deadline,
                    executor,
                )
            except RuntimeError:
                # The pool has been shut down after a timeout
                future = None
            pending.append((domain, future))
        return pending

    def _collect_children(
        self,
        pending: list[tuple[str, Optional[concurrent.futures.Future]]],
        active_path: tuple[str, ...],
        depth: int,
        deadline: float,
        executor: concurrent.futures.ThreadPoolExecutor,
    ) -> list[_DomainResult]:
        results = []
        for domain, future in pending:
            # A child that no worker has picked up yet runs in this thread,
            # so a parent waiting on its children can never starve the pool.
            if future is None or future.cancel():
                results.append(
                    self._resolve_branch(
                        domain, active_path, depth, deadline, executor
                    )
                )
                continue
            remaining = max(deadline - time.monotonic(), 0)
            try:
                results.append(future.result(timeout=remaining))
            except concurrent.futures.TimeoutError:
                results.append(self._timeout_result(domain))
        return results

    def _resolve_a(self, result: _DomainResult, domain: str, value: Optional[str]):
        target, cidr4, cidr6 = split_cidr(value)
        target = target or domain
        try:
            addresses = self.dns_client.query_a(target)
            result.ips.update(_apply_cidr(addresses, cidr4, cidr6))
        except (DNSException, SPFError) as error:
            logging.warning(f"Unable to resolve a:{target} for {domain}: {error}")
            result.add_error(target, error)

    def _resolve_mx(self, result: _DomainResult, domain: str, value: Optional[str]):
        target, cidr4, cidr6 = split_cidr(value)
        target = target or domain
        try:
            hosts = self.dns_client.query_mx(target)
        except DNSException as error:
            logging.warning(f"Unable to resolve mx:{target} for {domain}: {error}")
            result.add_error(target, error)
            return
        if len(hosts) > MAX_MX_EXCHANGES:
            result.add_error(
                target,
                SPFError(
                    f"{target} has more than {MAX_MX_EXCHANGES} MX records - "
                    "(RFC 7208 § 4.6.4)"
                ),
            )
            hosts = hosts[:MAX_MX_EXCHANGES]
        for host in hosts:
            exchange = host["exchange"]
            result.dns_lookups += 1
            try:
                addresses = self.dns_client.query_a(exchange)
                result.ips.update(_apply_cidr(addresses, cidr4, cidr6))
            except (DNSException, SPFError) as error:
                logging.warning(f"Unable to resolve MX host {exchange}: {error}")
                result.add_error(exchange, error)

    def _resolve(
        self,
        domain: str,
        active_path: tuple[str, ...],
        depth: int,
        deadline: float,
        executor: concurrent.futures.ThreadPoolExecutor,
    ) -> _DomainResult:
        domain = normalize_domain(domain).rstrip(".")
        result = _DomainResult()
        if depth > self.max_depth:
            result.add_error(
                domain,
                SPFDepthExceeded(
                    f"Include depth {depth} exceeds the maximum of {self.max_depth}"
                ),
            )
            return result
        if domain in active_path:
            loop = " -> ".join(active_path + (domain,))
            result.add_error(domain, SPFIncludeLoop(f"Include loop detected: {loop}"))
            return result
        if time.monotonic() >= deadline:
            return self._timeout_result(domain)

        active_path = active_path + (domain,)
        logging.debug(f"Resolving SPF record for {domain} at depth {depth}")
        try:
            record = get_spf_record_string(self.dns_client.query_txt(domain), domain)
        except (DNSException, SPFError) as error:
            logging.warning(f"Unable to get the SPF record for {domain}: {error}")
            result.add_error(domain, error)
            return result

        terms = tokenize_spf_record(record)
        children = []
        redirect = None
        has_all = False
        deferred = []
        for term in terms:
            term_type = term["type"]
            value = term["value"]
            if term_type == "all":
                has_all = True
                # Anything after all is never evaluated
                break
            if term_type == "redirect":
                redirect = value
                continue
            if term_type not in SPF_MECHANISM_TYPES:
                continue
            if term_type in ("ip4", "ip6"):
                try:
                    network = normalize_ip_network(value or "")
                    if ipaddress.ip_network(network).version != int(term_type[-1]):
                        raise ValueError(network)
                    result.ips.add(network)
                except ValueError:
                    result.add_error(
                        domain, SPFError(f"{value} is not a valid {term_type} value")
                    )
                continue
            result.dns_lookups += 1
            target = split_cidr(value)[0] if term_type in ("a", "mx") else value
            if term_type in ("ptr", "exists") or (target and "%" in target):
                result.unflattened.append(mechanism_to_string(term))
                continue
            if term_type == "include" and not value:
                result.add_error(domain, SPFError("include must have a value"))
                continue
            if term_type == "include":
                target = normalize_domain(value).rstrip(".")
                result.nested_includes.append(target)
                if self.recursive:
                    children.append(target)
                continue
            deferred.append(term)

        if redirect is not None and not has_all:
            result.dns_lookups += 1
            if "%" in redirect:
                result.unflattened.append(f"redirect={redirect}")
            else:
                redirect = normalize_domain(redirect).rstrip(".")
                result.nested_includes.append(redirect)
                if self.recursive:
                    children.append(redirect)

        # Children resolve on the pool while this thread handles a and mx
        pending = self._submit_children(
            children, active_path, depth + 1, deadline, executor
        )
        for term in deferred:
            if term["type"] == "a":
                self._resolve_a(result, domain, term["value"])
            else:
                self._resolve_mx(result, domain, term["value"])
        for child_result in self._collect_children(
            pending, active_path, depth + 1, deadline, executor
        ):
            result.merge(child_result)

        logging.debug(
            f"Resolved {domain}: {len(result.ips)} IPs, "
            f"{len(result.errors)} errors"
        )
        return result

    def resolve_spf_domain(
        self, domain: str, active_path: tuple[str, ...] = (), depth: int = 0
    ) -> DomainFlatteningResult:
        """
        Resolves one domain's SPF record into literal IP addresses

        Args:
            domain (str): The domain to resolve
            active_path (tuple): Domains already on the include path
            depth (int): The include depth of ``domain``

        Returns:
            dict: A ``dict`` with ``ips``, ``nested_includes``, ``errors``,
                  ``dns_lookups``, and ``unflattened`` keys
        """
        deadline = time.monotonic() + self.timeout
        executor = self._new_executor()
        try:
            return self._resolve_branch(
                domain, tuple(active_path), depth, deadline, executor
            ).to_dict()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def flatten(self, domains: Iterable[str], depth: int = 0) -> FlatteningResult:
        """
        Flattens the SPF records of one or more domains

        Every failure is recorded against the domain it belongs to. A domain
        that is still unresolved when the timeout expires is reported with a
        timeout error. Queries still in flight at that point finish in the
        background, each bounded by the DNS client timeout.

        Args:
            domains: The domains to flatten
            depth (int): The include level of ``domains``; 1 when they are
                         the includes of a record

        Returns:
            dict: A ``dict`` with the following keys:
                - ``resolved_domains`` - Per-domain results
                - ``total_ips`` - The number of distinct IPs across all domains
                - ``errors`` - Every error, de-duplicated
                - ``status`` - ``safe`` with no errors, otherwise ``partial``
        """
        domains = list(
            dict.fromkeys(normalize_domain(domain).rstrip(".") for domain in domains)
        )
        deadline = time.monotonic() + self.timeout
        executor = self._new_executor()
        resolved_domains = {}
        try:
            futures = {
                domain: executor.submit(
                    self._resolve_branch, domain, (), depth, deadline, executor
                )
                for domain in domains
            }
            concurrent.futures.wait(
                futures.values(), timeout=max(deadline - time.monotonic(), 0)
            )
            for domain, future in futures.items():
                if future.done() and not future.cancelled():
                    resolved_domains[domain] = future.result().to_dict()
                else:
                    logging.warning(f"Timed out resolving {domain}")
                    resolved_domains[domain] = self._timeout_result(domain).to_dict()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        all_ips = set()
        errors = []
        for result in resolved_domains.values():
            all_ips.update(result["ips"])
            errors += result["errors"]
        errors = list(dict.fromkeys(errors))

        return {
            "resolved_domains": resolved_domains,
            "total_ips": len(all_ips),
            "errors": errors,
            "status": "safe" if len(errors) == 0 else "partial",
        }


def flatten_spf_domains(
    domains: Iterable[str],
    dns_client: Optional[BaseDNSClient] = None,
    *,
    recursive: bool = True,
    max_depth: int = FLATTEN_MAX_DEPTH,
    timeout: float = FLATTEN_TIMEOUT,
    max_workers: int = FLATTEN_MAX_WORKERS,
) -> FlatteningResult:
    """
    Flattens the SPF records of one or more domains

    Args:
        domains: The domains to flatten
        dns_client: Queries DNS; a :class:`checkspf.utils.DNSClient` is used
                    when omitted
        recursive (bool): Resolve nested includes
        max_depth (int): The deepest level of nested includes to resolve
        timeout (float): Wall-clock seconds allowed for the whole operation
        max_workers (int): The maximum number of resolver threads

    Returns:
        dict: See :meth:`SPFFlattener.flatten`
    """
    flattener = SPFFlattener(
        dns_client,
        recursive=recursive,
        max_depth=max_depth,
        timeout=timeout,
        max_workers=max_workers,
    )
    return flattener.flatten(domains)
