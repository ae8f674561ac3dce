# -*- coding: utf-8 -*-
"""SPF macro parsing, analysis, and expansion (RFC 7208 § 7)"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from typing import Optional, TypedDict, Union, Literal
from urllib.parse import quote

from checkspf._constants import SYNTAX_ERROR_MARKER

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

MACRO_LETTERS = set("slodiphcrtv")
MACRO_DELIMS = set(".-+,/_=")
MAX_MACRO_DIGITS = 128
SENSITIVE_MACRO_LETTERS = set("spct")
LONG_FIELD_MACRO_LETTERS = set("slohp")
MAX_MACROS_PER_VALUE = 5

MACRO_ESCAPES = {"%": "%", "_": " ", "-": "%20"}

SecurityRisk = Literal["low", "medium", "high"]

MACRO_SECURITY_RISKS: dict[str, SecurityRisk] = {
    "i": "low",
    "d": "low",
    "o": "low",
    "l": "low",
    "v": "low",
    "r": "low",
    "h": "medium",
    "c": "medium",
    "t": "medium",
    "s": "high",
    "p": "high",
}

MACRO_SECURITY_RISK_DESCRIPTIONS = {
    "s": "Sender macro (%{s}) is taken from the envelope sender and can be "
    "spoofed by attackers",
    "p": "Validated domain macro (%{p}) adds a PTR lookup and relies on "
    "forward-confirmed reverse DNS, which is weak",
    "c": "Client IP macro (%{c}) discloses the connecting client's address",
    "t": "Timestamp macro (%{t}) discloses message timing details",
    "h": "HELO macro (%{h}) is chosen by the connecting client",
}

_RISK_ORDER = ["low", "medium", "high"]


class SPFMacroError(Exception):
    """Raised when an SPF macro is malformed or cannot be expanded"""


class SPFMacro(TypedDict):
    raw: str
    letter: str
    digits: Optional[int]
    reverse: bool
    delimiters: str
    url_escape: bool
    position: int
    security_risk: SecurityRisk


class MacroAnalysisResult(TypedDict):
    macros: list[SPFMacro]
    total_macros: int
    complexity_score: int
    security_risks: list[str]
    performance_warnings: list[str]
    optimization_suggestions: list[str]
    errors: list[str]


class MacroExpansionContext(TypedDict, total=False):
    sender_ip: str
    sender_email: str
    current_domain: str
    helo_domain: str
    validated_domain: str
    receiving_domain: str
    timestamp: int


class MacroExpansionTestResult(TypedDict):
    expanded: Optional[str]
    is_valid: bool
    errors: list[str]
    security_risk: SecurityRisk


DEFAULT_MACRO_CONTEXT: MacroExpansionContext = {
    "sender_ip": "192.168.1.100",
    "sender_email": "test@example.com",
    "current_domain": "company.com",
    "helo_domain": "mail.example.com",
    "validated_domain": "mail.example.com",
    "receiving_domain": "mx.company.com",
}


def get_default_macro_context() -> MacroExpansionContext:
    """Returns the example context with the current time as the timestamp"""
    context: MacroExpansionContext = dict(DEFAULT_MACRO_CONTEXT)
    context["timestamp"] = int(time.time())
    return context


def _mark_syntax_error(value: str, pos: int, reason: str) -> str:
    marked_value = value[:pos] + SYNTAX_ERROR_MARKER + value[pos:]
    return (
        f"{reason} at position {pos} "
        f"(marked with {SYNTAX_ERROR_MARKER}) in value: {marked_value}"
    )


MacroToken = tuple[int, int, Union[str, SPFMacro]]


def _scan_macros(value: str) -> tuple[list[MacroToken], list[str]]:
    """
    Walks a macro-string and returns its expansion tokens and syntax errors

    Each token is ``(start, end, replacement)`` where ``replacement`` is the
    literal text of an escape (``%%``, ``%_``, ``%-``) or an ``SPFMacro``.
    """
    tokens = []
    errors = []
    i = 0
    length = len(value)

    while i < length:
        if value[i] != "%":
            i += 1
            continue

        if i + 1 >= length:
            errors.append(_mark_syntax_error(value, i, "Incomplete SPF macro"))
            break

        next_ch = value[i + 1]

        if next_ch in MACRO_ESCAPES:
            tokens.append((i, i + 2, MACRO_ESCAPES[next_ch]))
            i += 2
            continue

        if next_ch != "{":
            errors.append(_mark_syntax_error(value, i, "Invalid SPF macro syntax"))
            i += 1
            continue

        close = value.find("}", i + 2)
        if close == -1:
            errors.append(_mark_syntax_error(value, i, "Unterminated SPF macro"))
            break

        raw = value[i : close + 1]
        body = value[i + 2 : close]
        if not body:
            errors.append(_mark_syntax_error(value, i, "Empty SPF macro"))
            i = close + 1
            continue

        letter = body[0]
        if letter.lower() not in MACRO_LETTERS:
            errors.append(
                _mark_syntax_error(
                    value, i + 2, f"Unknown SPF macro letter {letter!r} in {raw}"
                )
            )
            i = close + 1
            continue

        rest = body[1:]
        j = 0
        while j < len(rest) and rest[j].isdigit():
            j += 1
        digits = None
        if j:
            digits = int(rest[:j])
            if digits == 0 or digits > MAX_MACRO_DIGITS:
                errors.append(
                    _mark_syntax_error(
                        value,
                        i + 3,
                        f"SPF macro digits must be between 1 and "
                        f"{MAX_MACRO_DIGITS} in {raw}",
                    )
                )
                i = close + 1
                continue

        reverse = False
        if j < len(rest) and rest[j].lower() == "r":
            reverse = True
            j += 1

        delimiters = rest[j:]
        bad_delimiter = None
        for k, d in enumerate(delimiters):
            if d not in MACRO_DELIMS:
                bad_delimiter = i + 3 + j + k
                break
        if bad_delimiter is not None:
            errors.append(
                _mark_syntax_error(
                    value, bad_delimiter, f"Invalid SPF macro delimiter in {raw}"
                )
            )
            i = close + 1
            continue

        macro: SPFMacro = {
            "raw": raw,
            "letter": letter.lower(),
            "digits": digits,
            "reverse": reverse,
            "delimiters": "".join(dict.fromkeys(delimiters)) or ".",
            "url_escape": letter.isupper(),
            "position": i,
            "security_risk": MACRO_SECURITY_RISKS[letter.lower()],
        }
        tokens.append((i, close + 1, macro))
        i = close + 1

    return tokens, errors


def get_macro_complexity(macro: SPFMacro) -> int:
    """Scores how hard a single macro is to read and reason about"""
    score = 10
    if macro["digits"] is not None:
        score += 5
    if macro["delimiters"] != ".":
        score += 5
    if macro["reverse"]:
        score += 5
    if macro["letter"] in SENSITIVE_MACRO_LETTERS:
        score += 15
    return score


def parse_spf_macros(text: str) -> MacroAnalysisResult:
    """
    Parses and analyzes the SPF macros in a mechanism or modifier value

    Args:
        text (str): A macro-string, e.g. ``%{ir}.%{v}._spf.%{d}``

    Returns:
        dict: A ``dict`` with the following keys:
            - ``macros`` - A ``list`` of parsed macros
            - ``total_macros`` - The number of macros
            - ``complexity_score`` - The summed complexity of all macros
            - ``security_risks`` - A ``list`` of security concerns
            - ``performance_warnings`` - A ``list`` of performance concerns
            - ``optimization_suggestions`` - A ``list`` of suggestions
            - ``errors`` - A ``list`` of syntax errors
    """
    tokens, errors = _scan_macros(text)
    macros = [token[2] for token in tokens if not isinstance(token[2], str)]

    complexity_score = sum(map(get_macro_complexity, macros))

    security_risks = []
    for macro in macros:
        description = MACRO_SECURITY_RISK_DESCRIPTIONS.get(macro["letter"])
        if description and description not in security_risks:
            security_risks.append(description)

    performance_warnings = []
    optimization_suggestions = []
    if len(macros) > MAX_MACROS_PER_VALUE:
        performance_warnings.append(
            f"{len(macros)} macros in single mechanism may impact DNS "
            "resolution performance"
        )
    if any(macro["letter"] == "p" for macro in macros):
        performance_warnings.append(
            "PTR macros (%{p}) cause additional DNS lookups per email"
        )
        optimization_suggestions.append(
            "Consider replacing %{p} macros with static IP ranges for better "
            "performance"
        )
    for macro in macros:
        if (
            macro["letter"] in LONG_FIELD_MACRO_LETTERS
            and macro["digits"] is not None
            and macro["delimiters"] != "."
        ):
            performance_warnings.append(
                f"{macro['raw']} combines label truncation with custom "
                "delimiters on a long field"
            )
    if len([m for m in macros if m["letter"] == "s"]) > 2:
        optimization_suggestions.append(
            "Multiple %{s} macros may be redundant - consider consolidation"
        )
    if errors:
        optimization_suggestions.append(
            "Fix malformed macro syntax to ensure proper SPF evaluation"
        )

    results: MacroAnalysisResult = {
        "macros": macros,
        "total_macros": len(macros),
        "complexity_score": complexity_score,
        "security_risks": security_risks,
        "performance_warnings": performance_warnings,
        "optimization_suggestions": optimization_suggestions,
        "errors": errors,
    }
    return results


def _require(context: MacroExpansionContext, key: str, letter: str):
    value = context.get(key)
    if value is None or value == "":
        raise SPFMacroError(
            f"Cannot expand %{{{letter}}}: the {key} context field is missing"
        )
    return value


def _parse_ip(context: MacroExpansionContext, letter: str):
    sender_ip = _require(context, "sender_ip", letter)
    try:
        return ipaddress.ip_address(sender_ip)
    except ValueError:
        raise SPFMacroError(
            f"Cannot expand %{{{letter}}}: {sender_ip} is not a valid IP address"
        )


def get_macro_field(letter: str, context: MacroExpansionContext) -> str:
    """
    Returns the unmodified context value a macro letter refers to

    Raises:
        :exc:`checkspf.macros.SPFMacroError`
    """
    letter = letter.lower()
    if letter in ("s", "l", "o"):
        sender = _require(context, "sender_email", letter)
        local_part, at, sender_domain = sender.rpartition("@")
        if not at:
            sender_domain = sender
        if letter == "s":
            return sender
        if letter == "l":
            # RFC 7208 § 4.3
            return local_part or "postmaster"
        if not sender_domain:
            raise SPFMacroError(
                f"Cannot expand %{{o}}: {sender} does not have a domain part"
            )
        return sender_domain
    if letter == "d":
        return _require(context, "current_domain", letter)
    if letter == "i":
        ip = _parse_ip(context, letter)
        if ip.version == 6:
            # RFC 7208 § 7.3: dot-format nibbles
            return ".".join(ip.exploded.replace(":", ""))
        return str(ip)
    if letter == "p":
        return _require(context, "validated_domain", letter)
    if letter == "v":
        return "ip6" if _parse_ip(context, letter).version == 6 else "in-addr"
    if letter == "h":
        return _require(context, "helo_domain", letter)
    if letter == "c":
        return _parse_ip(context, letter).packed.hex().upper()
    if letter == "r":
        return _require(context, "receiving_domain", letter)
    if letter == "t":
        return str(int(_require(context, "timestamp", letter)))
    raise SPFMacroError(f"Unknown SPF macro letter {letter!r}")


def _transform(value: str, macro: SPFMacro) -> str:
    delimiter_pattern = "[" + re.escape(macro["delimiters"]) + "]"
    labels = re.split(delimiter_pattern, value)
    if macro["reverse"]:
        labels.reverse()
    if macro["digits"] is not None:
        labels = labels[-macro["digits"] :]
    expanded = ".".join(labels)
    if macro["url_escape"]:
        expanded = quote(expanded, safe="")
    return expanded


def expand_spf_macro(
    macro: Union[str, SPFMacro], context: MacroExpansionContext
) -> str:
    """
    Expands a single SPF macro

    Args:
        macro: A macro string such as ``%{d2}`` or a parsed macro
        context (dict): The expansion context

    Returns:
        str: The expanded value

    Raises:
        :exc:`checkspf.macros.SPFMacroError`
    """
    if isinstance(macro, str):
        tokens, errors = _scan_macros(macro)
        if errors:
            raise SPFMacroError(errors[0])
        token = tokens[0] if len(tokens) == 1 else None
        if token is None or token[:2] != (0, len(macro)) or isinstance(token[2], str):
            raise SPFMacroError(f"{macro} is not a single SPF macro")
        macro = token[2]
    return _transform(get_macro_field(macro["letter"], context), macro)


def expand_macros_in_text(text: str, context: MacroExpansionContext) -> str:
    """
    Expands every macro and escape in a macro-string, left to right

    Raises:
        :exc:`checkspf.macros.SPFMacroError`
    """
    tokens, errors = _scan_macros(text)
    if errors:
        raise SPFMacroError(errors[0])
    parts = []
    last = 0
    for start, end, replacement in tokens:
        parts.append(text[last:start])
        if isinstance(replacement, str):
            parts.append(replacement)
        else:
            parts.append(expand_spf_macro(replacement, context))
        last = end
    parts.append(text[last:])
    return "".join(parts)


def get_max_security_risk(macros: list[SPFMacro]) -> SecurityRisk:
    """Returns the highest security risk among the given macros"""
    risk: SecurityRisk = "low"
    for macro in macros:
        if _RISK_ORDER.index(macro["security_risk"]) > _RISK_ORDER.index(risk):
            risk = macro["security_risk"]
    return risk


def test_macro_expansion(
    text: str, context: Optional[MacroExpansionContext] = None
) -> MacroExpansionTestResult:
    """
    Parses and expands a macro-string for interactive testing

    Args:
        text (str): A macro-string
        context (dict): The expansion context; defaults to
                        :func:`get_default_macro_context`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``expanded`` - The expanded string, or ``None`` on failure
            - ``is_valid`` - ``True`` if at least one macro parsed and
              expanded without errors
            - ``errors`` - A ``list`` of errors
            - ``security_risk`` - The highest risk of any macro found
    """
    if context is None:
        context = get_default_macro_context()
    analysis = parse_spf_macros(text)
    errors = list(analysis["errors"])
    expanded = None
    if not errors:
        try:
            expanded = expand_macros_in_text(text, context)
        except SPFMacroError as e:
            logging.debug(f"Macro expansion failed for {text}: {e}")
            errors.append(str(e))

    results: MacroExpansionTestResult = {
        "expanded": expanded,
        "is_valid": analysis["total_macros"] > 0 and len(errors) == 0,
        "errors": errors,
        "security_risk": get_max_security_risk(analysis["macros"]),
    }
    return results

