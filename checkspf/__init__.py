# -*- coding: utf-8 -*-

"""Analyzes, optimizes, and flattens SPF records"""

from __future__ import annotations

import json
import logging
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, Union

import checkspf._constants
from checkspf._constants import (
    FLATTEN_MAX_DEPTH,
    FLATTEN_MAX_WORKERS,
    FLATTEN_TIMEOUT,
)
from checkspf.flatten import SPFFlattener, flatten_spf_domains
from checkspf.lookups import compute_lookup_breakdown
from checkspf.macros import MacroExpansionContext
from checkspf.optimizer import (
    analyze_spf_record_macros,
    build_flattened_spf_record,
    get_flattening_suggestions,
    get_optimization_suggestions,
    get_risk_assessment,
    validate_flattened_record,
)
from checkspf.spf import SPFError, get_spf_record_string, parse_spf_record
from checkspf.utils import (
    BaseDNSClient,
    DNSClient,
    DNSException,
    get_base_domain,
    normalize_domain,
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


__version__ = checkspf._constants.__version__

__all__ = [
    "__version__",
    "analyze_spf_record",
    "check_spf",
    "check_domains",
    "flatten_spf_domains",
    "results_to_json",
    "results_to_csv",
    "output_to_file",
]


def analyze_spf_record(
    record: str, *, macro_context: Optional[MacroExpansionContext] = None
) -> dict:
    """
    Statically analyzes an SPF record without making any DNS queries

    Args:
        record (str): An SPF record
        macro_context (dict): Values used for example macro expansions

    Returns:
        dict: A ``dict`` with the following keys:
            - ``record`` - The record string
            - ``valid`` - ``True`` when the record has no errors
            - ``parsed`` - See :func:`checkspf.spf.parse_spf_record`
            - ``lookups`` - See :func:`checkspf.lookups.compute_lookup_breakdown`
            - ``risk`` - See :func:`checkspf.optimizer.get_risk_assessment`
            - ``optimizations`` - See
              :func:`checkspf.optimizer.get_optimization_suggestions`
            - ``macros`` - See
              :func:`checkspf.optimizer.analyze_spf_record_macros`
    """
    parsed = parse_spf_record(record)
    return {
        "record": parsed["raw"],
        "valid": parsed["is_valid"] and len(parsed["errors"]) == 0,
        "parsed": parsed,
        "lookups": compute_lookup_breakdown(parsed),
        "risk": get_risk_assessment(parsed),
        "optimizations": get_optimization_suggestions(parsed),
        "macros": analyze_spf_record_macros(parsed, macro_context),
    }


def check_spf(
    domain: str,
    *,
    dns_client: Optional[BaseDNSClient] = None,
    recursive: bool = True,
    max_depth: int = FLATTEN_MAX_DEPTH,
    flatten_timeout: float = FLATTEN_TIMEOUT,
    max_workers: int = FLATTEN_MAX_WORKERS,
    mail_volume_percentage: Optional[float] = None,
) -> dict:
    """
    Queries, analyzes, and flattens the SPF record of a domain

    Args:
        domain (str): A domain name
        dns_client: Queries DNS; a :class:`checkspf.utils.DNSClient` is used
                    when omitted
        recursive (bool): Resolve nested includes while flattening
        max_depth (int): The deepest level of nested includes to resolve
        flatten_timeout (float): Wall-clock seconds allowed for flattening
        max_workers (int): The maximum number of resolver threads
        mail_volume_percentage (float): The share of mail volume sent by the
                                        domain, used to grade suggestions

    Returns:
        dict: The output of :func:`analyze_spf_record`, plus:
            - ``domain`` - The domain name
            - ``base_domain`` - The base domain
            - ``flattening`` - The flattening result of the record's includes
            - ``flattening_suggestions`` - See
              :func:`checkspf.optimizer.get_flattening_suggestions`
            - ``flattened_record`` - The record with every safe suggestion
              applied
            - ``flattened_record_validation`` - See
              :func:`checkspf.optimizer.validate_flattened_record`

        If the record cannot be retrieved, the dictionary will have the
        following keys:
            - ``domain``, ``base_domain``, ``record`` (``None``)
            - ``error`` - The error message
            - ``valid`` - False
    """
    domain = normalize_domain(domain).rstrip(".")
    if dns_client is None:
        dns_client = DNSClient()
    results = {
        "domain": domain,
        "base_domain": get_base_domain(domain),
        "record": None,
        "valid": False,
    }
    try:
        record = get_spf_record_string(dns_client.query_txt(domain), domain)
    except (DNSException, SPFError) as error:
        logging.debug(f"Unable to get the SPF record for {domain}: {error}")
        results["error"] = str(error)
        return results

    results.update(analyze_spf_record(record))
    parsed = results["parsed"]

    include_targets = []
    for mechanism in parsed["mechanisms"]:
        if mechanism["type"] == "include" and not mechanism["has_macros"]:
            include_targets.append(mechanism["value"])
    flattener = SPFFlattener(
        dns_client,
        recursive=recursive,
        max_depth=max_depth,
        timeout=flatten_timeout,
        max_workers=max_workers,
    )
    flattening = flattener.flatten(include_targets, depth=1)
    results["flattening"] = flattening
    suggestions = get_flattening_suggestions(
        parsed, flattening, mail_volume_percentage
    )
    results["flattening_suggestions"] = suggestions

    flattened_record = None
    flattened_record_validation = None
    safe_suggestions = [s for s in suggestions if s["safe"]]
    if len(safe_suggestions) > 0:
        resolved_includes = {}
        for suggestion in safe_suggestions:
            include = suggestion["mechanism"].split(":", 1)[1]
            resolved_includes[include] = suggestion["ips"]
        flattened_record = build_flattened_spf_record(parsed, resolved_includes)
        flattened_record_validation = validate_flattened_record(flattened_record)
    results["flattened_record"] = flattened_record
    results["flattened_record_validation"] = flattened_record_validation

    return results


def check_domains(
    domains: list[str],
    *,
    dns_client: Optional[BaseDNSClient] = None,
    recursive: bool = True,
    max_depth: int = FLATTEN_MAX_DEPTH,
    flatten_timeout: float = FLATTEN_TIMEOUT,
    max_workers: int = FLATTEN_MAX_WORKERS,
    wait: float = 0.0,
) -> Union[dict, list[dict]]:
    """
    Checks the SPF records of the given domains

    Args:
        domains (list): A list of domains to check
        dns_client: Queries DNS; shared by every domain
        recursive (bool): Resolve nested includes while flattening
        max_depth (int): The deepest level of nested includes to resolve
        flatten_timeout (float): Wall-clock seconds allowed for flattening
                                 each domain
        max_workers (int): The maximum number of resolver threads
        wait (float): number of seconds to wait between processing domains

    Returns:
        A ``dict`` or ``list`` of ``dict`` from :func:`check_spf`
    """
    domains = sorted(
        set(
            map(
                lambda d: normalize_domain(d.rstrip(".\r\n").strip().split(",")[0]),
                domains,
            )
        )
    )
    domains = [domain for domain in domains if "." in domain]
    if dns_client is None:
        dns_client = DNSClient()
    results = []
    for domain in domains:
        logging.debug(f"Checking: {domain}")
        results.append(
            check_spf(
                domain,
                dns_client=dns_client,
                recursive=recursive,
                max_depth=max_depth,
                flatten_timeout=flatten_timeout,
                max_workers=max_workers,
            )
        )
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)
    if len(results) == 1:
        results = results[0]

    return results


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(
    results: Union[dict, list[dict]],
) -> list[dict]:
    """
    Converts :func:`check_spf` results into CSV row dictionaries

    Args:
        results: A result ``dict`` or a ``list`` of them

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        row = {
            "domain": result.get("domain"),
            "base_domain": result.get("base_domain"),
            "spf_record": result["record"],
            "spf_valid": result["valid"],
        }
        if "error" in result:
            row["spf_error"] = result["error"]
            rows.append(row)
            continue
        parsed = result["parsed"]
        lookups = result["lookups"]
        row["spf_errors"] = "|".join(parsed["errors"])
        row["spf_warnings"] = "|".join(parsed["warnings"])
        row["dns_lookups"] = lookups["total_lookups"]
        row["compliance_status"] = lookups["compliance_status"]
        row["risk"] = result["risk"]["current_risk"]
        row["macro_risk"] = result["macros"]["risk_level"]
        if "flattening" in result:
            flattening = result["flattening"]
            row["flattening_status"] = flattening["status"]
            row["flattening_total_ips"] = flattening["total_ips"]
            row["flattening_errors"] = "|".join(flattening["errors"])
            row["flattened_record"] = result["flattened_record"]
        rows.append(row)
    return rows


def results_to_csv(results: Union[dict, list[dict]]) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "base_domain",
        "spf_valid",
        "spf_record",
        "dns_lookups",
        "compliance_status",
        "risk",
        "macro_risk",
        "flattening_status",
        "flattening_total_ips",
        "flattened_record",
        "spf_error",
        "spf_errors",
        "spf_warnings",
        "flattening_errors",
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
