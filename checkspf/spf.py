# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record parsing"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Optional, TypedDict, Union, Literal

import pyleri

from checkspf._constants import (
    LOOKUP_WARNING_THRESHOLD,
    MAX_DNS_LOOKUPS,
    SYNTAX_ERROR_MARKER,
)
from checkspf.macros import parse_spf_macros
from checkspf.utils import is_public_suffix

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

SPF_VERSION_TAG = "v=spf1"

SPF_MECHANISM_TYPES = ("all", "include", "a", "mx", "ptr", "ip4", "ip6", "exists")

# A known mechanism keyword, optionally followed by ":value" or "/value"
SPF_MECHANISM_TERM_REGEX = re.compile(
    r"^([+\-~?])?(all|include|a|mx|ptr|ip4|ip6|exists)([:/].*)?$", re.IGNORECASE
)
SPF_MODIFIER_TERM_REGEX = re.compile(r"^([^=]*)=(.*)$")
SPF_MODIFIER_NAME_REGEX = re.compile(r"^[a-z][a-z0-9\-_.]*$", re.IGNORECASE)
SPF_CIDR_REGEX = re.compile(r"^(.*?)(?:/(\d{1,2}))?(?://(\d{1,3}))?$")

SPF_DOMAIN_SPEC_REGEX_STRING = r"[\w+/_.:\-{}%=,]+"
SPF_MECHANISM_GRAMMAR_REGEX_STRING = (
    r"(all"
    rf"|(?:include|exists):{SPF_DOMAIN_SPEC_REGEX_STRING}"
    r"|ip4:[0-9.]+(?:/[0-9]+)?"
    r"|ip6:[0-9a-f:.]+(?:/[0-9]+)?"
    rf"|(?:a|mx|ptr)(?::{SPF_DOMAIN_SPEC_REGEX_STRING})?"
    r"(?:/[0-9]+)?(?://[0-9]+)?)"
)
SPF_MODIFIER_GRAMMAR_REGEX_STRING = r"[a-z][a-z0-9\-_.]*=[\w+/_.:\-{}%=,]*"

# Lookup weights per RFC 7208 § 4.6.4. The implicit A lookups made for each
# MX exchange are counted during flattening, not in the static budget.
MECHANISM_LOOKUP_WEIGHTS = {
    "include": 1,
    "a": 1,
    "mx": 1,
    "ptr": 1,
    "exists": 1,
    "ip4": 0,
    "ip6": 0,
    "all": 0,
}
MODIFIER_LOOKUP_WEIGHTS = {"redirect": 1, "exp": 0, "unknown": 0}

MechanismType = Literal["all", "include", "a", "mx", "ptr", "ip4", "ip6", "exists"]
ModifierType = Literal["redirect", "exp", "unknown"]
Qualifier = Literal["+", "-", "~", "?"]


class SPFError(Exception):
    """Raised when an SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFParseError(SPFError):
    """Raised when an SPF term is malformed"""


class SPFRecordNotFound(SPFError):
    """Raised when an SPF record could not be found"""

    def __init__(self, error: Union[Exception, str], domain: str):
        self.error = error
        self.domain = domain
        SPFError.__init__(self, str(error))


class MultipleSPFRTXTRecords(SPFError):
    """Raised when multiple TXT spf1 records are found"""


class SPFIncludeLoop(SPFError):
    """Raised when a domain is already on the active include path"""


class SPFDepthExceeded(SPFError):
    """Raised when an include chain is nested deeper than allowed"""


class SPFTimeout(SPFError):
    """Raised when a domain was not resolved before the deadline"""


class _SPFTermGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for a single SPF term"""

    qualifier = pyleri.Regex(r"[+\-~?]")
    mechanism = pyleri.Regex(SPF_MECHANISM_GRAMMAR_REGEX_STRING, re.IGNORECASE)
    modifier = pyleri.Regex(SPF_MODIFIER_GRAMMAR_REGEX_STRING, re.IGNORECASE)

    START = pyleri.Choice(
        pyleri.Sequence(pyleri.Optional(qualifier), mechanism),
        modifier,
    )


_spf_term_grammar = _SPFTermGrammar()


class SPFMechanism(TypedDict):
    type: MechanismType
    qualifier: Qualifier
    value: Optional[str]
    lookup_count: int
    has_macros: bool
    macro_count: int
    resolved_ips: list[str]
    errors: list[str]


class SPFModifier(TypedDict):
    type: ModifierType
    name: str
    value: str
    lookup_count: int
    has_macros: bool


class SPFRecord(TypedDict):
    version: str
    mechanisms: list[SPFMechanism]
    modifiers: list[SPFModifier]
    total_lookups: int
    raw: str
    errors: list[str]
    warnings: list[str]
    is_valid: bool


class SPFTerm(TypedDict):
    type: str
    qualifier: Qualifier
    value: Optional[str]


def _unquote_record(record: str) -> str:
    # Collapse RFC-style split TXT tokens only, then remove remaining quotes.
    return re.sub(r'"\s*"', "", record.strip()).replace('"', "").strip()


def split_cidr(value: Optional[str]) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Splits an ``a`` or ``mx`` value into a domain and dual CIDR lengths

    Args:
        value (str): e.g. ``example.com/24//64``, ``/24``, or ``None``

    Returns:
        tuple: ``(domain, ipv4_prefix, ipv6_prefix)``; missing parts are ``None``
    """
    if not value:
        return None, None, None
    match = SPF_CIDR_REGEX.match(value)
    domain, cidr4, cidr6 = match.groups()
    return domain or None, cidr4, cidr6


def _split_mechanism_value(rest: Optional[str]) -> Optional[str]:
    if not rest:
        return None
    if rest.startswith(":"):
        return rest[1:]
    # "a/24", "mx//64"
    return rest


def tokenize_spf_record(record: str) -> list[SPFTerm]:
    """
    Splits an SPF record into terms without validating them

    Only the term type, qualifier, and value are extracted. Terms that are
    neither a known mechanism nor a modifier are skipped.

    Args:
        record (str): An SPF record

    Returns:
        list: A ``list`` of ``dicts`` with ``type``, ``qualifier``, and ``value``
              keys; modifiers use their name as the type
    """
    terms: list[SPFTerm] = []
    for token in _unquote_record(record).split()[1:]:
        mechanism_match = SPF_MECHANISM_TERM_REGEX.match(token)
        if mechanism_match:
            qualifier, mechanism, rest = mechanism_match.groups()
            terms.append(
                {
                    "type": mechanism.lower(),
                    "qualifier": qualifier or "+",
                    "value": _split_mechanism_value(rest),
                }
            )
            continue
        modifier_match = SPF_MODIFIER_TERM_REGEX.match(token)
        if modifier_match:
            name, value = modifier_match.groups()
            terms.append({"type": name.lower(), "qualifier": "+", "value": value})
    return terms


def get_spf_record_string(txt_records: list[str], domain: str) -> str:
    """
    Selects the SPF record from a domain's TXT records (RFC 7208 § 4.5)

    Args:
        txt_records (list): TXT record strings
        domain (str): The domain the records belong to

    Returns:
        str: The SPF record

    Raises:
        :exc:`checkspf.spf.SPFRecordNotFound`
        :exc:`checkspf.spf.MultipleSPFRTXTRecords`
    """
    spf_txt_records = []
    for record in txt_records:
        record = _unquote_record(record)
        # Records with a version section of e.g. "v=spf10" are discarded
        if record.lower() == SPF_VERSION_TAG or record.lower().startswith(
            f"{SPF_VERSION_TAG} "
        ):
            spf_txt_records.append(record)
    if len(spf_txt_records) > 1:
        raise MultipleSPFRTXTRecords(f"{domain} has multiple SPF TXT records")
    if len(spf_txt_records) == 0:
        raise SPFRecordNotFound(f"An SPF record does not exist for {domain}.", domain)
    return spf_txt_records[0]


def _check_term_syntax(term: str) -> Optional[str]:
    parsed_term = _spf_term_grammar.parse(term)
    if parsed_term.is_valid:
        return None
    pos = parsed_term.pos
    expecting = list(map(lambda x: str(x).strip('"'), list(parsed_term.expecting)))
    expecting_str = " or ".join(expecting) or "end of term"
    marked_term = term[:pos] + SYNTAX_ERROR_MARKER + term[pos:]
    return (
        f"Expected {expecting_str} at position {pos} "
        f"(marked with {SYNTAX_ERROR_MARKER}) in: {marked_term}"
    )


def _validate_mechanism_value(mechanism: str, value: Optional[str]) -> None:
    """Raises SPFParseError for values a mechanism cannot take"""
    if mechanism == "all":
        if value is not None:
            raise SPFParseError("The all mechanism does not take a value")
        return
    if mechanism in ("include", "exists") and not value:
        raise SPFParseError(f"{mechanism} must have a value")
    if mechanism in ("ip4", "ip6"):
        if not value:
            raise SPFParseError(f"{mechanism} must have a value")
        if "%" in value:
            raise SPFParseError(
                f"SPF macros are not allowed in {mechanism} mechanisms: {value}"
            )
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError:
            raise SPFParseError(f"{value} is not a valid {mechanism} value.")
        if mechanism == "ip4" and not isinstance(network, ipaddress.IPv4Network):
            raise SPFParseError(f"{value} is not a valid ipv4 value. Looks like ipv6.")
        if mechanism == "ip6" and not isinstance(network, ipaddress.IPv6Network):
            raise SPFParseError(f"{value} is not a valid ipv6 value. Looks like ipv4.")
    if mechanism in ("a", "mx"):
        _, cidr4, cidr6 = split_cidr(value)
        if cidr4 is not None and int(cidr4) > 32:
            raise SPFParseError(f"{value} has an invalid IPv4 prefix length")
        if cidr6 is not None and int(cidr6) > 128:
            raise SPFParseError(f"{value} has an invalid IPv6 prefix length")


def _get_macro_target(mechanism: str, value: Optional[str]) -> Optional[str]:
    if mechanism in ("a", "mx"):
        return split_cidr(value)[0]
    return value


def parse_spf_record(record: str) -> SPFRecord:
    """
    Parses an SPF record into mechanisms and modifiers without any DNS queries

    Parsing never aborts on a bad term: each problem is recorded in
    ``errors`` and parsing continues with the next term.

    Args:
        record (str): An SPF record

    Returns:
        dict: A ``dict`` with the following keys:
            - ``version`` - The version tag
            - ``mechanisms`` - A ``list`` of parsed mechanisms
            - ``modifiers`` - A ``list`` of parsed modifiers
            - ``total_lookups`` - The static DNS lookup count
            - ``raw`` - The record text
            - ``errors`` - A ``list`` of parse and macro errors
            - ``warnings`` - A ``list`` of warnings
            - ``is_valid`` - ``True`` if the record starts with ``v=spf1``
    """
    raw = _unquote_record(record)
    logging.debug(f"Parsing SPF record: {raw}")
    errors = []
    warnings = []
    mechanisms: list[SPFMechanism] = []
    modifiers: list[SPFModifier] = []

    tokens = raw.split()
    version = tokens[0] if tokens else ""
    is_valid = version.lower() == SPF_VERSION_TAG
    if not tokens:
        errors.append("Empty SPF record")
    elif not is_valid:
        errors.append(
            f'SPF record must start with "{SPF_VERSION_TAG}", not "{version}"'
        )

    all_position = None
    redirect_seen = False
    exp_seen = False
    for position, token in enumerate(tokens[1:]):
        syntax_error = _check_term_syntax(token)
        mechanism_match = SPF_MECHANISM_TERM_REGEX.match(token)
        modifier_match = SPF_MODIFIER_TERM_REGEX.match(token)
        try:
            if mechanism_match is None and modifier_match is None:
                raise SPFParseError(syntax_error or f"Unknown term: {token}")
            if mechanism_match:
                qualifier, mechanism_type, rest = mechanism_match.groups()
                mechanism_type = mechanism_type.lower()
                value = _split_mechanism_value(rest)
                if syntax_error:
                    raise SPFParseError(syntax_error)
                _validate_mechanism_value(mechanism_type, value)
                macros = {"total_macros": 0, "errors": []}
                macro_target = _get_macro_target(mechanism_type, value)
                if macro_target and "%" in macro_target:
                    macros = parse_spf_macros(macro_target)
                mechanism: SPFMechanism = {
                    "type": mechanism_type,
                    "qualifier": qualifier or "+",
                    "value": value,
                    "lookup_count": MECHANISM_LOOKUP_WEIGHTS[mechanism_type],
                    "has_macros": "%{" in (value or ""),
                    "macro_count": macros["total_macros"],
                    "resolved_ips": [],
                    "errors": list(macros["errors"]),
                }
                mechanisms.append(mechanism)
                errors += macros["errors"]
                if mechanism_type == "all" and all_position is None:
                    all_position = position
                if mechanism_type == "ptr":
                    warnings.append(
                        "The ptr mechanism should not be used - (RFC 7208 § 5.5)"
                    )
                if (
                    mechanism_type in ("include", "a", "mx", "exists")
                    and macro_target
                    and "%" not in macro_target
                    and is_public_suffix(macro_target)
                ):
                    warnings.append(
                        f"{token}: {macro_target} is a public suffix, not a domain"
                    )
            else:
                name, value = modifier_match.groups()
                if not SPF_MODIFIER_NAME_REGEX.match(name):
                    raise SPFParseError(syntax_error or f"Invalid modifier: {token}")
                modifier_type = name.lower()
                if modifier_type not in ("redirect", "exp"):
                    modifier_type = "unknown"
                    warnings.append(f"Unknown modifier {name} is ignored")
                if modifier_type == "redirect":
                    if redirect_seen:
                        raise SPFParseError("Multiple redirect modifiers")
                    redirect_seen = True
                if modifier_type == "exp":
                    if exp_seen:
                        raise SPFParseError("Multiple exp values are not permitted")
                    exp_seen = True
                if modifier_type != "unknown" and value == "":
                    raise SPFParseError(f"The {modifier_type} modifier is missing a value")
                if syntax_error and modifier_type != "unknown":
                    raise SPFParseError(syntax_error)
                macro_errors = []
                if "%" in value and modifier_type != "unknown":
                    macro_errors = parse_spf_macros(value)["errors"]
                modifier: SPFModifier = {
                    "type": modifier_type,
                    "name": name,
                    "value": value,
                    "lookup_count": MODIFIER_LOOKUP_WEIGHTS[modifier_type],
                    "has_macros": "%{" in value,
                }
                modifiers.append(modifier)
                errors += macro_errors
        except SPFParseError as error:
            logging.debug(f"SPF parse error in {token}: {error}")
            errors.append(f"{token}: {error}")

    if all_position is not None and all_position < len(tokens) - 2:
        ignored = []
        for token in tokens[all_position + 2 :]:
            if SPF_MECHANISM_TERM_REGEX.match(token):
                ignored.append(token)
        if ignored:
            warnings.append(
                "Mechanisms after the all mechanism are unreachable and are "
                f"ignored: {' '.join(ignored)}"
            )
    if redirect_seen and all_position is not None:
        warnings.append(
            "The redirect modifier is ignored because the record contains an all "
            "mechanism (RFC 7208 § 6.1)"
        )
    if is_valid and all_position is None and not redirect_seen:
        warnings.append(
            'The SPF record does not contain an "all" mechanism or a redirect '
            "modifier. This may allow unauthorized senders."
        )

    total_lookups = sum(m["lookup_count"] for m in mechanisms) + sum(
        m["lookup_count"] for m in modifiers
    )
    if total_lookups > MAX_DNS_LOOKUPS:
        warnings.append(
            f"Parsing the SPF record requires {total_lookups}/{MAX_DNS_LOOKUPS} "
            "maximum DNS lookups - (RFC 7208 § 4.6.4)"
        )
    elif total_lookups >= LOOKUP_WARNING_THRESHOLD:
        warnings.append(
            f"The SPF record is close to the {MAX_DNS_LOOKUPS} DNS lookup limit "
            f"({total_lookups}). Consider flattening."
        )

    spf_record: SPFRecord = {
        "version": version,
        "mechanisms": mechanisms,
        "modifiers": modifiers,
        "total_lookups": total_lookups,
        "raw": raw,
        "errors": errors,
        "warnings": warnings,
        "is_valid": is_valid,
    }
    return spf_record


def mechanism_to_string(mechanism: Union[SPFMechanism, SPFTerm]) -> str:
    """Renders a mechanism back into SPF term syntax"""
    qualifier = "" if mechanism["qualifier"] == "+" else mechanism["qualifier"]
    value = mechanism["value"]
    if value is None:
        return f"{qualifier}{mechanism['type']}"
    if value.startswith("/"):
        return f"{qualifier}{mechanism['type']}{value}"
    return f"{qualifier}{mechanism['type']}:{value}"


def modifier_to_string(modifier: SPFModifier) -> str:
    """Renders a modifier back into SPF term syntax"""
    return f"{modifier['name']}={modifier['value']}"
