# -*- coding: utf-8 -*-
"""SPF DNS lookup budget (RFC 7208 § 4.6.4)"""

from __future__ import annotations

from typing import Literal, Optional, Sequence, TypedDict

from checkspf._constants import LOOKUP_WARNING_THRESHOLD, MAX_DNS_LOOKUPS
from checkspf.spf import (
    SPFRecord,
    mechanism_to_string,
    modifier_to_string,
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

ComplianceStatus = Literal["compliant", "warning", "fail"]
RiskLevel = Literal["low", "medium", "high", "critical"]


class LookupBreakdownEntry(TypedDict):
    term: str
    lookups: int
    source: Literal["mechanism", "modifier"]


class LookupBreakdown(TypedDict):
    include_count: int
    a_count: int
    mx_count: int
    ptr_count: int
    exists_count: int
    redirect_count: int
    total_lookups: int
    compliance_status: ComplianceStatus
    detailed_breakdown: list[LookupBreakdownEntry]


def get_compliance_status(
    total_lookups: int, errors: Optional[Sequence[str]] = None
) -> ComplianceStatus:
    """
    Classifies a lookup count against the RFC 7208 budget

    Args:
        total_lookups (int): The number of DNS lookups a record requires
        errors (list): Parse errors found in the record

    Returns:
        str: ``fail`` when over the limit or when there are any errors,
             ``warning`` when close to the limit, otherwise ``compliant``
    """
    if total_lookups > MAX_DNS_LOOKUPS or errors:
        return "fail"
    if total_lookups >= LOOKUP_WARNING_THRESHOLD:
        return "warning"
    return "compliant"


def get_risk_level(total_lookups: int) -> RiskLevel:
    """Grades how close a lookup count is to the budget"""
    if total_lookups > MAX_DNS_LOOKUPS:
        return "critical"
    if total_lookups >= LOOKUP_WARNING_THRESHOLD:
        return "high"
    if total_lookups >= MAX_DNS_LOOKUPS // 2:
        return "medium"
    return "low"


def compute_lookup_breakdown(record: SPFRecord) -> LookupBreakdown:
    """
    Groups the DNS lookup cost of a parsed record by term type

    The record is only read, so this can be called again after a caller
    edits the mechanisms of a copy.

    Args:
        record (dict): A parsed SPF record

    Returns:
        dict: Per-type counts, ``total_lookups``, ``compliance_status``,
              and a ``detailed_breakdown`` entry for each lookup-consuming
              term
    """
    counts = {name: 0 for name in ("include", "a", "mx", "ptr", "exists", "redirect")}
    detailed_breakdown: list[LookupBreakdownEntry] = []
    for mechanism in record["mechanisms"]:
        if mechanism["lookup_count"] == 0:
            continue
        if mechanism["type"] in counts:
            counts[mechanism["type"]] += mechanism["lookup_count"]
        detailed_breakdown.append(
            {
                "term": mechanism_to_string(mechanism),
                "lookups": mechanism["lookup_count"],
                "source": "mechanism",
            }
        )
    for modifier in record["modifiers"]:
        if modifier["lookup_count"] == 0:
            continue
        if modifier["type"] in counts:
            counts[modifier["type"]] += modifier["lookup_count"]
        detailed_breakdown.append(
            {
                "term": modifier_to_string(modifier),
                "lookups": modifier["lookup_count"],
                "source": "modifier",
            }
        )
    total_lookups = sum(entry["lookups"] for entry in detailed_breakdown)

    return {
        "include_count": counts["include"],
        "a_count": counts["a"],
        "mx_count": counts["mx"],
        "ptr_count": counts["ptr"],
        "exists_count": counts["exists"],
        "redirect_count": counts["redirect"],
        "total_lookups": total_lookups,
        "compliance_status": get_compliance_status(total_lookups, record["errors"]),
        "detailed_breakdown": detailed_breakdown,
    }
