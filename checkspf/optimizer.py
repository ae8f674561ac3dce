# -*- coding: utf-8 -*-
"""SPF record optimization advice"""

from __future__ import annotations

import ipaddress
import logging
from typing import Literal, Optional, TypedDict
from collections.abc import Iterable, Mapping

from checkspf._constants import LOOKUP_WARNING_THRESHOLD, MAX_DNS_LOOKUPS
from checkspf.flatten import FlatteningResult
from checkspf.lookups import get_risk_level
from checkspf.macros import (
    MacroExpansionContext,
    SPFMacro,
    SPFMacroError,
    expand_macros_in_text,
    get_default_macro_context,
    get_max_security_risk,
    parse_spf_macros,
)
from checkspf.spf import (
    SPF_VERSION_TAG,
    SPFMechanism,
    SPFRecord,
    mechanism_to_string,
    modifier_to_string,
    parse_spf_record,
)
from checkspf.utils import normalize_domain, normalize_ip_network, sort_ip_networks

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

# Mail volume percentages
LOW_IMPACT_THRESHOLD = 5
MEDIUM_IMPACT_THRESHOLD = 25

# RFC 7208 § 3.3 and RFC 1035 § 3.3
MAX_TXT_STRING_LENGTH = 255
RECOMMENDED_RECORD_BYTES = 450
MAX_UDP_RESPONSE_BYTES = 512

ImpactLevel = Literal["low", "medium", "high"]
Severity = Literal["low", "medium", "high"]
SuggestionType = Literal["flatten_include", "remove_redundant", "use_ip4", "remove_ptr"]

_SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}


class FlatteningSuggestion(TypedDict):
    mechanism: str
    estimated_savings: int
    implementation: str
    current_lookups: int
    flattened_lookups: int
    ips: list[str]
    safe: bool
    impact: Optional[ImpactLevel]


class OptimizationSuggestion(TypedDict):
    type: SuggestionType
    severity: Severity
    description: str
    mechanism: str
    current_lookups: int
    estimated_savings: int
    implementation: str


class FlattenedRecordValidation(TypedDict):
    is_valid: bool
    lookup_count: int
    record_size: int
    txt_strings: list[str]
    warnings: list[str]
    errors: list[str]


class RiskAssessment(TypedDict):
    current_risk: str
    lookup_utilization: float
    failure_risk: str
    recommended_actions: list[str]


def grade_impact(percentage: float) -> ImpactLevel:
    """
    Grades the share of mail volume a change affects

    Args:
        percentage (float): The affected share of mail volume, 0-100

    Returns:
        str: ``low``, ``medium``, or ``high``

    Raises:
        ValueError: The percentage is outside of 0-100
    """
    if percentage < 0 or percentage > 100:
        raise ValueError(f"{percentage} is not a percentage between 0 and 100")
    if percentage < LOW_IMPACT_THRESHOLD:
        return "low"
    if percentage < MEDIUM_IMPACT_THRESHOLD:
        return "medium"
    return "high"


def consolidate_ip_addresses(ips: Iterable[str]) -> list[str]:
    """
    Collapses IP addresses and networks into the fewest CIDR blocks

    Args:
        ips: IPv4 and IPv6 addresses or networks

    Returns:
        list: Sorted addresses and networks that cover exactly the same space

    Raises:
        ValueError: A value is not an IP address or network
    """
    networks = {4: [], 6: []}
    for ip in ips:
        network = ipaddress.ip_network(ip.strip(), strict=False)
        networks[network.version].append(network)
    consolidated = []
    for version in (4, 6):
        for network in ipaddress.collapse_addresses(networks[version]):
            consolidated.append(normalize_ip_network(str(network)))
    return sort_ip_networks(consolidated)


def _ip_terms(ips: Iterable[str], qualifier: str) -> list[str]:
    qualifier = "" if qualifier == "+" else qualifier
    terms = []
    for ip in sort_ip_networks(ips):
        version = ipaddress.ip_network(ip, strict=False).version
        terms.append(f"{qualifier}ip{version}:{ip}")
    return terms


def build_flattened_spf_record(
    record: SPFRecord, resolved_includes: Mapping[str, Iterable[str]]
) -> str:
    """
    Renders a record with some includes replaced by literal addresses

    Each replaced include becomes ``ip4``/``ip6`` terms carrying the
    include's qualifier, in the include's position. All other terms,
    including a trailing ``all`` or ``redirect``, are kept as they are.

    Args:
        record (dict): A parsed SPF record
        resolved_includes (dict): Maps an include target to its addresses

    Returns:
        str: The new SPF record
    """
    resolved = {
        normalize_domain(domain).rstrip("."): ips
        for domain, ips in resolved_includes.items()
    }
    terms = [SPF_VERSION_TAG]
    for mechanism in record["mechanisms"]:
        target = None
        if mechanism["type"] == "include" and mechanism["value"]:
            target = normalize_domain(mechanism["value"]).rstrip(".")
        if target in resolved:
            terms += _ip_terms(resolved[target], mechanism["qualifier"])
        else:
            terms.append(mechanism_to_string(mechanism))
    for modifier in record["modifiers"]:
        terms.append(modifier_to_string(modifier))
    return " ".join(terms)


def get_flattening_suggestions(
    record: SPFRecord,
    flattening_result: FlatteningResult,
    mail_volume_percentage: Optional[float] = None,
) -> list[FlatteningSuggestion]:
    """
    Suggests includes that cost fewer lookups once flattened

    An include qualifies when it resolved to at least one address and the
    terms that cannot be flattened (``exists``, ``ptr``, macros) cost fewer
    lookups than the chain the include triggers.

    A suggestion is only ``safe`` when the include resolved without errors
    and every one of its terms became an address. The ``implementation``
    holds addresses only, so the ``exists``, ``ptr``, and macro checks of an
    unsafe suggestion are dropped from it.

    Args:
        record (dict): A parsed SPF record
        flattening_result (dict): The result of flattening the record's
                                  include targets
        mail_volume_percentage (float): The share of mail volume affected by
                                        the record, from an external source

    Returns:
        list: Suggestions, largest ``estimated_savings`` first
    """
    impact = None
    if mail_volume_percentage is not None:
        impact = grade_impact(mail_volume_percentage)
    resolved_domains = flattening_result["resolved_domains"]
    suggestions: list[FlatteningSuggestion] = []
    for mechanism in record["mechanisms"]:
        if mechanism["type"] != "include" or not mechanism["value"]:
            continue
        domain = normalize_domain(mechanism["value"]).rstrip(".")
        if domain not in resolved_domains:
            continue
        result = resolved_domains[domain]
        current_lookups = mechanism["lookup_count"] + result["dns_lookups"]
        flattened_lookups = len(result["unflattened"])
        if len(result["ips"]) == 0 or flattened_lookups >= current_lookups:
            logging.debug(f"Flattening {domain} would not save any DNS lookups")
            continue
        suggestions.append(
            {
                "mechanism": mechanism_to_string(mechanism),
                "estimated_savings": current_lookups,
                "implementation": build_flattened_spf_record(
                    record, {domain: result["ips"]}
                ),
                "current_lookups": current_lookups,
                "flattened_lookups": flattened_lookups,
                "ips": result["ips"],
                "safe": len(result["errors"]) == 0
                and len(result["unflattened"]) == 0,
                "impact": impact,
            }
        )
    return sorted(suggestions, key=lambda s: s["estimated_savings"], reverse=True)


def split_txt_strings(record_string: str) -> list[str]:
    """Splits a record into TXT character-strings of at most 255 characters"""
    return [
        record_string[i : i + MAX_TXT_STRING_LENGTH]
        for i in range(0, len(record_string), MAX_TXT_STRING_LENGTH)
    ] or [""]


def validate_flattened_record(record_string: str) -> FlattenedRecordValidation:
    """
    Checks a candidate record before it is published

    Args:
        record_string (str): The candidate SPF record

    Returns:
        dict: A ``dict`` with ``is_valid``, ``lookup_count``, ``record_size``,
              ``txt_strings``, ``warnings``, and ``errors`` keys
    """
    parsed = parse_spf_record(record_string)
    warnings = list(parsed["warnings"])
    record_size = len(parsed["raw"].encode("utf-8"))
    txt_strings = split_txt_strings(parsed["raw"])
    if len(parsed["raw"]) > MAX_TXT_STRING_LENGTH:
        warnings.append(
            f"The SPF record is {len(parsed['raw'])} characters long and must be "
            f"published as {len(txt_strings)} strings of at most "
            f"{MAX_TXT_STRING_LENGTH} characters"
        )
    if record_size > MAX_UDP_RESPONSE_BYTES:
        warnings.append(
            f"The SPF record is {record_size} bytes and will not fit in a "
            f"{MAX_UDP_RESPONSE_BYTES} byte UDP DNS response"
        )
    elif record_size > RECOMMENDED_RECORD_BYTES:
        warnings.append(
            f"The SPF record is {record_size} bytes, close to the "
            f"{MAX_UDP_RESPONSE_BYTES} byte UDP DNS response limit"
        )
    return {
        "is_valid": parsed["is_valid"] and len(parsed["errors"]) == 0,
        "lookup_count": parsed["total_lookups"],
        "record_size": record_size,
        "txt_strings": txt_strings,
        "warnings": warnings,
        "errors": parsed["errors"],
    }


def _find_redundant_mechanisms(
    mechanisms: list[SPFMechanism],
) -> list[OptimizationSuggestion]:
    suggestions: list[OptimizationSuggestion] = []
    seen = set()
    for mechanism in mechanisms:
        key = (mechanism["type"], (mechanism["value"] or "").lower())
        if key in seen:
            term = mechanism_to_string(mechanism)
            suggestions.append(
                {
                    "type": "remove_redundant",
                    "severity": "low",
                    "description": f"Duplicate {mechanism['type']} mechanism found",
                    "mechanism": term,
                    "current_lookups": mechanism["lookup_count"],
                    "estimated_savings": mechanism["lookup_count"],
                    "implementation": f'Remove the duplicate "{term}" mechanism',
                }
            )
        seen.add(key)

    networks = []
    for mechanism in mechanisms:
        if mechanism["type"] not in ("ip4", "ip6"):
            continue
        try:
            networks.append(
                (mechanism["value"], ipaddress.ip_network(mechanism["value"], strict=False))
            )
        except ValueError:
            continue
    for i, (value, network) in enumerate(networks):
        for other_value, other_network in networks[i + 1 :]:
            if network == other_network or network.version != other_network.version:
                continue
            if network.overlaps(other_network):
                suggestions.append(
                    {
                        "type": "remove_redundant",
                        "severity": "low",
                        "description": "Overlapping IP ranges detected",
                        "mechanism": f"{value} and {other_value}",
                        "current_lookups": 0,
                        "estimated_savings": 0,
                        "implementation": (
                            "Consolidate overlapping IP ranges: "
                            f"{value} and {other_value}"
                        ),
                    }
                )
    return suggestions


def _suggest_ip_consolidation(
    mechanisms: list[SPFMechanism],
) -> list[OptimizationSuggestion]:
    suggestions: list[OptimizationSuggestion] = []
    for mechanism_type in ("ip4", "ip6"):
        values = []
        for mechanism in mechanisms:
            if mechanism["type"] == mechanism_type and mechanism["qualifier"] == "+":
                values.append(mechanism["value"])
        try:
            consolidated = consolidate_ip_addresses(values)
        except ValueError:
            continue
        if len(consolidated) < len(set(values)):
            suggestions.append(
                {
                    "type": "use_ip4",
                    "severity": "low",
                    "description": (
                        f"{len(values)} {mechanism_type} mechanisms can be "
                        f"consolidated into {len(consolidated)} CIDR blocks"
                    ),
                    "mechanism": ", ".join(values),
                    "current_lookups": 0,
                    "estimated_savings": 0,
                    "implementation": " ".join(
                        f"{mechanism_type}:{value}" for value in consolidated
                    ),
                }
            )
    return suggestions


def get_optimization_suggestions(record: SPFRecord) -> list[OptimizationSuggestion]:
    """
    Finds static improvements to a parsed record

    No DNS queries are made. Suggestions are sorted by severity, then by
    estimated lookup savings.

    Args:
        record (dict): A parsed SPF record

    Returns:
        list: A ``list`` of suggestion ``dicts``
    """
    mechanisms = record["mechanisms"]
    suggestions: list[OptimizationSuggestion] = []
    if record["total_lookups"] >= LOOKUP_WARNING_THRESHOLD:
        for mechanism in mechanisms:
            if mechanism["type"] != "include" or mechanism["has_macros"]:
                continue
            suggestions.append(
                {
                    "type": "flatten_include",
                    "severity": "high",
                    "description": (
                        f"Consider flattening {mechanism['value']} as the record is "
                        f"approaching the {MAX_DNS_LOOKUPS} DNS lookup limit"
                    ),
                    "mechanism": mechanism_to_string(mechanism),
                    "current_lookups": mechanism["lookup_count"],
                    "estimated_savings": mechanism["lookup_count"],
                    "implementation": (
                        f"Resolve the SPF record of {mechanism['value']} and replace "
                        "the include with ip4/ip6 mechanisms. The addresses must be "
                        "monitored for changes."
                    ),
                }
            )
    suggestions += _find_redundant_mechanisms(mechanisms)
    suggestions += _suggest_ip_consolidation(mechanisms)
    for mechanism in mechanisms:
        if mechanism["type"] != "ptr":
            continue
        suggestions.append(
            {
                "type": "remove_ptr",
                "severity": "high",
                "description": "The ptr mechanism is deprecated, slow, and unreliable",
                "mechanism": mechanism_to_string(mechanism),
                "current_lookups": mechanism["lookup_count"],
                "estimated_savings": mechanism["lookup_count"],
                "implementation": (
                    "Remove the ptr mechanism and list the authorized sending IPs "
                    "with ip4/ip6 mechanisms (RFC 7208 § 5.5)"
                ),
            }
        )
    return sorted(
        suggestions,
        key=lambda s: (_SEVERITY_ORDER[s["severity"]], s["estimated_savings"]),
        reverse=True,
    )


def get_risk_assessment(record: SPFRecord) -> RiskAssessment:
    """
    Summarizes how close a record is to failing the lookup limit

    Args:
        record (dict): A parsed SPF record

    Returns:
        dict: ``current_risk``, ``lookup_utilization`` (percent of the
              limit), ``failure_risk``, and ``recommended_actions``
    """
    total_lookups = record["total_lookups"]
    risk_level = get_risk_level(total_lookups)
    recommended_actions = []
    if risk_level == "critical":
        failure_risk = "immediate"
        recommended_actions.append(
            "The SPF record exceeds the DNS lookup limit and SPF checks will "
            "result in a permerror"
        )
        recommended_actions.append(
            "Flatten includes or remove unnecessary mechanisms now"
        )
    elif risk_level == "high":
        failure_risk = "high"
        recommended_actions.append(
            "The SPF record is close to the DNS lookup limit. Optimize it soon."
        )
        recommended_actions.append(
            "Any additional include may push the record over the limit"
        )
    elif risk_level == "medium":
        failure_risk = "medium"
        recommended_actions.append(
            "Consider optimizing to keep room for future changes"
        )
    else:
        failure_risk = "low"
        recommended_actions.append("The SPF record is within the DNS lookup limit")
    if any(m["type"] == "ptr" for m in record["mechanisms"]):
        recommended_actions.append("Remove deprecated ptr mechanisms")
    if len([m for m in record["mechanisms"] if m["type"] == "include"]) > 5:
        recommended_actions.append(
            "A high number of includes may impact performance"
        )
    return {
        "current_risk": risk_level,
        "lookup_utilization": round(total_lookups / MAX_DNS_LOOKUPS * 100, 1),
        "failure_risk": failure_risk,
        "recommended_actions": recommended_actions,
    }


def _assess_term_macros(macros: list[SPFMacro], term_type: str) -> dict:
    vulnerabilities = []
    dns_lookups = 0.0
    for macro in macros:
        letter = macro["letter"]
        if letter == "p":
            dns_lookups += 1
            if term_type in ("exists", "a", "mx"):
                dns_lookups += 1
                vulnerabilities.append(
                    {
                        "type": "dns_amplification",
                        "severity": "high",
                        "macro": macro["raw"],
                        "description": (
                            "The PTR macro in a DNS lookup mechanism multiplies the "
                            "queries made for each message"
                        ),
                    }
                )
        if letter in ("c", "t"):
            vulnerabilities.append(
                {
                    "type": "information_disclosure",
                    "severity": "medium",
                    "macro": macro["raw"],
                    "description": "The macro exposes client details in DNS queries",
                }
            )
        if letter == "s" and term_type == "exists":
            vulnerabilities.append(
                {
                    "type": "enumeration",
                    "severity": "medium",
                    "macro": macro["raw"],
                    "description": (
                        "The sender macro in an exists mechanism allows probing "
                        "for valid email addresses"
                    ),
                }
            )
        if letter == "i" and macro["reverse"]:
            dns_lookups += 0.5
    risk_level = get_max_security_risk(macros)
    if any(v["severity"] == "high" for v in vulnerabilities):
        risk_level = "high"
    return {
        "risk_level": risk_level,
        "vulnerabilities": vulnerabilities,
        "dns_lookups_per_message": dns_lookups,
    }


def analyze_spf_record_macros(
    record: SPFRecord, context: Optional[MacroExpansionContext] = None
) -> dict:
    """
    Assesses the security and performance of every macro in a record

    Args:
        record (dict): A parsed SPF record
        context (dict): Values used to produce example expansions

    Returns:
        dict: A ``dict`` with the following keys:
            - ``terms`` - Per-term ``macros``, ``expanded_example``,
              ``risk_level``, ``vulnerabilities``, and
              ``dns_lookups_per_message``
            - ``total_macros`` - The number of macros in the record
            - ``risk_level`` - ``low``, ``medium``, ``high``, or ``critical``
            - ``complexity_score`` - 0-100
            - ``processing_overhead`` - ``minimal``, ``moderate``,
              ``significant``, or ``severe``
            - ``recommendations`` - A ``list`` of recommendations
    """
    if context is None:
        context = get_default_macro_context()
    values = []
    for mechanism in record["mechanisms"]:
        values.append((mechanism["type"], mechanism_to_string(mechanism), mechanism["value"]))
    for modifier in record["modifiers"]:
        values.append(
            (f"modifier:{modifier['type']}", modifier_to_string(modifier), modifier["value"])
        )

    terms = []
    all_macros: list[SPFMacro] = []
    for term_type, term, value in values:
        if not value or "%" not in value:
            continue
        analysis = parse_spf_macros(value)
        if analysis["total_macros"] == 0:
            continue
        try:
            expanded_example = expand_macros_in_text(value, context)
        except SPFMacroError as error:
            expanded_example = None
            logging.debug(f"Unable to expand {term}: {error}")
        assessment = _assess_term_macros(
            analysis["macros"], term_type.replace("modifier:", "")
        )
        terms.append(
            {
                "term": term,
                "type": term_type,
                "macros": analysis["macros"],
                "expanded_example": expanded_example,
                "errors": analysis["errors"],
                **assessment,
            }
        )
        all_macros += analysis["macros"]

    risk_order = ["low", "medium", "high", "critical"]
    risk_level = "low"
    high_vulnerabilities = 0
    dns_lookups = 0.0
    for term in terms:
        if risk_order.index(term["risk_level"]) > risk_order.index(risk_level):
            risk_level = term["risk_level"]
        high_vulnerabilities += len(
            [v for v in term["vulnerabilities"] if v["severity"] == "high"]
        )
        dns_lookups += term["dns_lookups_per_message"]
    if high_vulnerabilities > 1:
        risk_level = "critical"

    if dns_lookups > 5 or len(all_macros) > 8:
        processing_overhead = "severe"
    elif dns_lookups > 3 or len(all_macros) > 5:
        processing_overhead = "significant"
    elif dns_lookups > 1 or len(all_macros) > 2:
        processing_overhead = "moderate"
    else:
        processing_overhead = "minimal"

    modifier_count = sum(
        int(m["digits"] is not None) + int(m["reverse"]) + int(m["delimiters"] != ".")
        for m in all_macros
    )
    complexity_score = len(all_macros) * 8 + modifier_count * 3
    complexity_score += len({m["letter"] for m in all_macros}) * 2
    complexity_score += 10 * len([m for m in all_macros if m["security_risk"] == "high"])
    complexity_score = min(complexity_score, 100)

    recommendations = []
    if risk_level in ("high", "critical"):
        recommendations.append(
            "Replace high risk macros with static mechanisms where possible"
        )
    if any(m["letter"] == "p" for m in all_macros):
        recommendations.append("Replace PTR based macros with ip4/ip6 mechanisms")
    if any(m["letter"] in ("c", "t") for m in all_macros):
        recommendations.append(
            "Audit the record for information leaked by %{c} and %{t} macros"
        )
    if processing_overhead in ("significant", "severe"):
        recommendations.append("Reduce the number of macros to lower processing cost")
    if complexity_score > 60:
        recommendations.append("Simplify macros to make the record easier to maintain")

    return {
        "terms": terms,
        "total_macros": len(all_macros),
        "risk_level": risk_level,
        "complexity_score": complexity_score,
        "processing_overhead": processing_overhead,
        "recommendations": recommendations,
    }
