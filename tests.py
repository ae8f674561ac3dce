#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import os
import threading
import time
import unittest

import checkspf
import checkspf.flatten
import checkspf.lookups
import checkspf.macros
import checkspf.optimizer
import checkspf.spf
import checkspf.utils
from checkspf._constants import SYNTAX_ERROR_MARKER


class FakeDNSClient(checkspf.utils.BaseDNSClient):
    """Answers queries from an in-memory zone instead of the network"""

    def __init__(self, zone, **kwargs):
        checkspf.utils.BaseDNSClient.__init__(self, **kwargs)
        self.zone = zone
        self.queries = []
        self._lock = threading.Lock()

    def _resolve(self, domain, record_type):
        with self._lock:
            self.queries.append((domain, record_type))
        answer = self.zone.get((domain, record_type))
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            if any(name == domain for name, _ in self.zone):
                raise checkspf.utils.DNSExceptionNoAnswer(
                    f"The domain {domain} does not have any {record_type} records."
                )
            raise checkspf.utils.DNSExceptionNXDOMAIN(
                f"The domain {domain} does not exist."
            )
        return list(answer)


class SlowDNSClient(FakeDNSClient):
    def _resolve(self, domain, record_type):
        time.sleep(1.0)
        return FakeDNSClient._resolve(self, domain, record_type)


class FlakyDNSClient(FakeDNSClient):
    """Times out the first query for each name and type"""

    def __init__(self, zone, **kwargs):
        FakeDNSClient.__init__(self, zone, **kwargs)
        self.failed = set()

    def _resolve(self, domain, record_type):
        if (domain, record_type) not in self.failed:
            self.failed.add((domain, record_type))
            raise checkspf.utils.DNSExceptionTimeout("The DNS query timed out")
        return FakeDNSClient._resolve(self, domain, record_type)


class FakeResponse(object):
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class FakeSession(object):
    def __init__(self, payloads):
        self.payloads = payloads
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append(params)
        return FakeResponse(self.payloads[(params["name"], params["type"])])


def spf(*terms):
    return [" ".join(("v=spf1",) + terms)]


class Test(unittest.TestCase):
    def testSPFRecordsEndingInFailAreValid(self):
        """Records that start with v=spf1 and end with -all are valid"""
        records = [
            "v=spf1 -all",
            "v=spf1 ip4:192.0.2.0/24 -all",
            "v=spf1 include:_spf.example.com mx a:mail.example.com -all",
            "v=spf1 foo bar:baz -all",
            "V=SPF1 IP6:2001:db8::/32 -ALL",
        ]
        for record in records:
            self.assertTrue(checkspf.spf.parse_spf_record(record)["is_valid"], record)

    def testSPFRecordWithoutVersionIsInvalid(self):
        """A record without the v=spf1 tag is invalid but still parsed"""
        parsed = checkspf.spf.parse_spf_record("v=spf2 ip4:192.0.2.1 -all")
        self.assertFalse(parsed["is_valid"])
        self.assertEqual(len(parsed["mechanisms"]), 2)
        self.assertEqual(parsed["mechanisms"][0]["value"], "192.0.2.1")

    def testTooManyIncludes(self):
        """Eleven includes need eleven lookups and fail compliance"""
        record = (
            "v=spf1 include:a.com include:b.com include:c.com include:d.com "
            "include:e.com include:f.com include:g.com include:h.com "
            "include:i.com include:j.com include:k.com ~all"
        )
        parsed = checkspf.spf.parse_spf_record(record)
        self.assertEqual(parsed["total_lookups"], 11)
        breakdown = checkspf.lookups.compute_lookup_breakdown(parsed)
        self.assertEqual(breakdown["total_lookups"], 11)
        self.assertEqual(breakdown["include_count"], 11)
        self.assertEqual(breakdown["compliance_status"], "fail")
        self.assertEqual(len(breakdown["detailed_breakdown"]), 11)

    def testLookupWeights(self):
        """ip4, ip6, all, and exp do not consume lookups"""
        record = (
            "v=spf1 ip4:192.0.2.1 ip6:2001:db8::1 a mx ptr exists:%{i}.x.example "
            "include:_spf.example.com redirect=example.net exp=explain.example.com"
        )
        parsed = checkspf.spf.parse_spf_record(record)
        breakdown = checkspf.lookups.compute_lookup_breakdown(parsed)
        self.assertEqual(parsed["total_lookups"], 6)
        self.assertEqual(breakdown["a_count"], 1)
        self.assertEqual(breakdown["mx_count"], 1)
        self.assertEqual(breakdown["ptr_count"], 1)
        self.assertEqual(breakdown["exists_count"], 1)
        self.assertEqual(breakdown["redirect_count"], 1)
        exp = [m for m in parsed["modifiers"] if m["type"] == "exp"][0]
        self.assertEqual(exp["lookup_count"], 0)

    def testComplianceStatus(self):
        """Lookup counts are classified as compliant, warning, or fail"""
        self.assertEqual(checkspf.lookups.get_compliance_status(7), "compliant")
        self.assertEqual(checkspf.lookups.get_compliance_status(8), "warning")
        self.assertEqual(checkspf.lookups.get_compliance_status(10), "warning")
        self.assertEqual(checkspf.lookups.get_compliance_status(11), "fail")
        self.assertEqual(
            checkspf.lookups.get_compliance_status(1, ["bad term"]), "fail"
        )

    def testUppercaseSPFMechanism(self):
        """Mechanisms and modifiers are case-insensitive"""
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 IP4:192.0.2.1 INCLUDE:example.com Redirect=example.net"
        )
        self.assertEqual(parsed["errors"], [])
        self.assertEqual(
            [m["type"] for m in parsed["mechanisms"]], ["ip4", "include"]
        )
        self.assertEqual(parsed["modifiers"][0]["type"], "redirect")

    def testSplitSPFRecord(self):
        """Split TXT strings are joined before parsing"""
        parsed = checkspf.spf.parse_spf_record('"v=spf1 ip4:192.0.2.1 " "-all"')
        self.assertEqual(parsed["raw"], "v=spf1 ip4:192.0.2.1 -all")
        self.assertEqual(parsed["errors"], [])

    def testSPFSyntaxErrors(self):
        """Malformed terms are reported without stopping the parser"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:192.0.2.1 @@@ -all")
        self.assertEqual(len(parsed["errors"]), 1)
        self.assertIn(SYNTAX_ERROR_MARKER, parsed["errors"][0])
        self.assertEqual(
            [m["type"] for m in parsed["mechanisms"]], ["ip4", "all"]
        )
        self.assertEqual(
            checkspf.lookups.compute_lookup_breakdown(parsed)["compliance_status"],
            "fail",
        )

    def testSPFInvalidIPv4(self):
        """Invalid ip4 values are errors"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:78.46.96.236/99 -all")
        self.assertEqual(len(parsed["errors"]), 1)
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:300.46.96.236 -all")
        self.assertIn("not a valid ip4 value", parsed["errors"][0])

    def testSPFInvalidIPv6inIPv4(self):
        """An IPv6 address in an ip4 mechanism is an error"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:2001:4860:4000::/36 -all")
        self.assertEqual(len(parsed["errors"]), 1)
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip6:192.0.2.1 -all")
        self.assertEqual(len(parsed["errors"]), 1)

    def testAllWithValue(self):
        """The all mechanism must not have a value"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 all:example.com")
        self.assertEqual(len(parsed["errors"]), 1)

    def testIncludeWithoutValue(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 include -all")
        self.assertEqual(len(parsed["errors"]), 1)

    def testDualCIDR(self):
        """a and mx accept IPv4 and IPv6 prefix lengths"""
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 a/24 mx:example.com/28//64 -all"
        )
        self.assertEqual(parsed["errors"], [])
        self.assertEqual(parsed["mechanisms"][0]["value"], "/24")
        self.assertEqual(
            checkspf.spf.split_cidr("example.com/28//64"), ("example.com", "28", "64")
        )
        parsed = checkspf.spf.parse_spf_record("v=spf1 a/33 -all")
        self.assertEqual(len(parsed["errors"]), 1)

    def testJunkAfterAll(self):
        """Mechanisms after all are unreachable and produce a warning"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 -all include:example.com")
        self.assertEqual(parsed["errors"], [])
        self.assertTrue(any("unreachable" in w for w in parsed["warnings"]))

    def testRedirectWithAll(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 redirect=example.com ~all")
        self.assertTrue(any("redirect" in w for w in parsed["warnings"]))

    def testMultipleRedirects(self):
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 redirect=example.com redirect=example.net"
        )
        self.assertEqual(len(parsed["errors"]), 1)
        self.assertEqual(len(parsed["modifiers"]), 1)

    def testNoAllOrRedirect(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:192.0.2.1")
        self.assertTrue(any('"all"' in w for w in parsed["warnings"]))

    def testPTRWarning(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 ptr -all")
        self.assertEqual(parsed["total_lookups"], 1)
        self.assertTrue(any("ptr" in w for w in parsed["warnings"]))

    def testUnknownModifier(self):
        """Unknown modifiers are kept with no lookup cost"""
        parsed = checkspf.spf.parse_spf_record("v=spf1 foo=bar -all")
        self.assertEqual(parsed["errors"], [])
        self.assertEqual(parsed["modifiers"][0]["type"], "unknown")
        self.assertEqual(parsed["modifiers"][0]["name"], "foo")
        self.assertEqual(parsed["total_lookups"], 0)

    def testPublicSuffixTarget(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 include:co.uk -all")
        self.assertTrue(any("public suffix" in w for w in parsed["warnings"]))

    def testMacrosInRecord(self):
        """Macro values are analyzed and counted"""
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 exists:%{ir}.%{v}._spf.%{d} -all"
        )
        self.assertEqual(parsed["errors"], [])
        exists = parsed["mechanisms"][0]
        self.assertTrue(exists["has_macros"])
        self.assertEqual(exists["macro_count"], 3)

    def testBadMacroInRecord(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 exists:%{x}.example.com -all")
        self.assertEqual(len(parsed["errors"]), 1)
        self.assertIn("Unknown SPF macro letter", parsed["errors"][0])
        self.assertEqual(parsed["mechanisms"][0]["errors"], parsed["errors"])

    def testMacrosNotAllowedInIP4(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 ip4:%{i} -all")
        self.assertEqual(len(parsed["errors"]), 1)

    def testTokenizeSPFRecord(self):
        terms = checkspf.spf.tokenize_spf_record(
            "v=spf1 ~include:example.com a mx:mail.example.com redirect=example.net"
        )
        self.assertEqual(
            terms[0], {"type": "include", "qualifier": "~", "value": "example.com"}
        )
        self.assertEqual(terms[1], {"type": "a", "qualifier": "+", "value": None})
        self.assertEqual(terms[3]["type"], "redirect")

    def testGetSPFRecordString(self):
        txt = ["google-site-verification=abc", "v=spf1 -all"]
        self.assertEqual(
            checkspf.spf.get_spf_record_string(txt, "example.com"), "v=spf1 -all"
        )
        self.assertRaises(
            checkspf.spf.MultipleSPFRTXTRecords,
            checkspf.spf.get_spf_record_string,
            ["v=spf1 -all", "v=spf1 ~all"],
            "example.com",
        )
        self.assertRaises(
            checkspf.spf.SPFRecordNotFound,
            checkspf.spf.get_spf_record_string,
            ["v=spf10 -all"],
            "example.com",
        )

    def testSenderMacroRisk(self):
        """The sender macro is a medium or high security risk"""
        results = checkspf.macros.parse_spf_macros("%{s}")
        self.assertEqual(results["total_macros"], 1)
        self.assertEqual(results["macros"][0]["letter"], "s")
        self.assertIn(results["macros"][0]["security_risk"], ["medium", "high"])
        self.assertEqual(len(results["security_risks"]), 1)

    def testMacroParsing(self):
        results = checkspf.macros.parse_spf_macros("%{ir}.%{v}._spf.%{d2-}")
        self.assertEqual(results["errors"], [])
        ir, v, d = results["macros"]
        self.assertTrue(ir["reverse"])
        self.assertEqual(ir["delimiters"], ".")
        self.assertEqual(d["digits"], 2)
        self.assertEqual(d["delimiters"], "-")
        self.assertEqual(results["complexity_score"], 15 + 10 + 20)

    def testMacroSyntaxErrors(self):
        for value in ["%{x}", "%{d0}", "%{d129}", "%{d", "%a", "%{d2!}", "%{}"]:
            results = checkspf.macros.parse_spf_macros(value)
            self.assertEqual(len(results["errors"]), 1, value)

    def testMacroPerformanceWarnings(self):
        results = checkspf.macros.parse_spf_macros("%{p}.%{d}.%{d}.%{d}.%{d}.%{d}")
        self.assertEqual(len(results["performance_warnings"]), 2)

    def testExpandDomainMacroTruncation(self):
        """Truncation keeps the rightmost labels"""
        context = {"current_domain": "mail.example.co.uk"}
        self.assertEqual(checkspf.macros.expand_spf_macro("%{d2}", context), "co.uk")
        self.assertEqual(
            checkspf.macros.expand_spf_macro("%{d1r}", context), "mail"
        )

    def testExpandMacrosInText(self):
        context = {
            "sender_ip": "192.0.2.3",
            "sender_email": "strong-bad@email.example.com",
            "current_domain": "email.example.com",
        }
        expand = checkspf.macros.expand_macros_in_text
        self.assertEqual(
            expand("%{ir}.%{v}._spf.%{d2}", context),
            "3.2.0.192.in-addr._spf.example.com",
        )
        self.assertEqual(expand("%{lr-}.lp._spf.%{d2}", context), "bad.strong.lp._spf.example.com")
        self.assertEqual(expand("%{l1r-}", context), "strong")
        self.assertEqual(expand("%%%_%-", context), "% %20")
        self.assertEqual(expand("%{S}", context), "strong-bad%40email.example.com")

    def testExpandIPv6Macros(self):
        context = {"sender_ip": "2001:db8::cb01"}
        expand = checkspf.macros.expand_macros_in_text
        self.assertEqual(
            expand("%{ir}.%{v}", context),
            "1.0.b.c.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.8.b.d.0.1.0.0.2.ip6",
        )
        self.assertEqual(expand("%{c}", context), "20010DB800000000000000000000CB01")

    def testEmptyLocalPart(self):
        context = {"sender_email": "@example.com"}
        self.assertEqual(
            checkspf.macros.expand_spf_macro("%{l}", context), "postmaster"
        )

    def testMissingMacroContext(self):
        """A missing context field is an error, never an empty string"""
        self.assertRaises(
            checkspf.macros.SPFMacroError,
            checkspf.macros.expand_macros_in_text,
            "%{h}.example.com",
            {"current_domain": "example.com"},
        )
        self.assertRaises(
            checkspf.macros.SPFMacroError,
            checkspf.macros.expand_spf_macro,
            "%{d}.example.com",
            {"current_domain": "example.com"},
        )

    def testTestMacroExpansion(self):
        results = checkspf.macros.test_macro_expansion("%{s}.%{d}")
        self.assertTrue(results["is_valid"])
        self.assertEqual(results["security_risk"], "high")
        self.assertEqual(results["expanded"], "test@example.com.company.com")
        results = checkspf.macros.test_macro_expansion("%{x}")
        self.assertFalse(results["is_valid"])
        self.assertIsNone(results["expanded"])

    def testTimestampMacroUsesCurrentTime(self):
        self.assertNotIn("timestamp", checkspf.macros.DEFAULT_MACRO_CONTEXT)
        results = checkspf.macros.test_macro_expansion("%{t}")
        self.assertTrue(results["is_valid"])
        self.assertLessEqual(abs(int(results["expanded"]) - time.time()), 5)

    def testIncludeLoop(self):
        """A loop is recorded and each domain's addresses are still returned"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all"),
                ("b.com", "TXT"): spf("ip4:192.0.2.2", "include:a.com", "-all"),
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1", "192.0.2.2"])
        self.assertEqual(len(a["errors"]), 1)
        self.assertIn("loop", a["errors"][0])
        self.assertIn("a.com -> b.com -> a.com", a["errors"][0])
        self.assertEqual(results["status"], "partial")

    def testSelfInclude(self):
        dns = FakeDNSClient({("a.com", "TXT"): spf("include:a.com", "-all")})
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com"])
        self.assertIn("loop", results["errors"][0])

    def testDiamondInclusion(self):
        """A domain may be included from two unrelated branches"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("include:b.com", "include:c.com", "-all"),
                ("b.com", "TXT"): spf("include:d.com", "-all"),
                ("c.com", "TXT"): spf("include:d.com", "-all"),
                ("d.com", "TXT"): spf("ip4:198.51.100.0/24", "-all"),
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["errors"], [])
        self.assertEqual(a["ips"], ["198.51.100.0/24"])
        self.assertEqual(a["nested_includes"].count("d.com"), 2)
        self.assertEqual(results["status"], "safe")
        self.assertEqual(results["total_ips"], 1)

    def testAandMXUnion(self):
        """a and mx mechanisms resolve to the de-duplicated union of addresses"""
        dns = FakeDNSClient(
            {
                ("example.com", "TXT"): spf("a", "mx", "a:other.example.com", "-all"),
                ("example.com", "A"): ["192.0.2.10"],
                ("example.com", "MX"): ["10 mx1.example.com.", "20 mx2.example.com."],
                ("mx1.example.com", "A"): ["192.0.2.10", "192.0.2.11"],
                ("mx2.example.com", "A"): ["192.0.2.12"],
                ("mx2.example.com", "AAAA"): ["2001:db8::12"],
                ("other.example.com", "A"): ["192.0.2.11"],
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["example.com"])
        result = results["resolved_domains"]["example.com"]
        self.assertEqual(result["errors"], [])
        self.assertEqual(
            result["ips"],
            ["192.0.2.10", "192.0.2.11", "192.0.2.12", "2001:db8::12"],
        )
        # a, mx, a:other, plus one address lookup per MX exchange
        self.assertEqual(result["dns_lookups"], 5)

    def testMXExchangeFailure(self):
        """A failing MX exchange does not stop the others from resolving"""
        dns = FakeDNSClient(
            {
                ("example.com", "TXT"): spf("mx", "-all"),
                ("example.com", "MX"): ["10 gone.example.com", "20 mx.example.com"],
                ("mx.example.com", "A"): ["192.0.2.20"],
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["example.com"])
        result = results["resolved_domains"]["example.com"]
        self.assertEqual(result["ips"], ["192.0.2.20"])
        self.assertEqual(len(result["errors"]), 1)
        self.assertIn("gone.example.com", result["errors"][0])

    def testCIDRAppliedToResolvedAddresses(self):
        dns = FakeDNSClient(
            {
                ("example.com", "TXT"): spf("a/24//64", "-all"),
                ("example.com", "A"): ["192.0.2.10"],
                ("example.com", "AAAA"): ["2001:db8::1"],
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["example.com"])
        self.assertEqual(
            results["resolved_domains"]["example.com"]["ips"],
            ["192.0.2.0/24", "2001:db8::/64"],
        )

    def testMalformedAddressAnswer(self):
        """An answer that is not an IP address is an error for that term only"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "a", "-all"),
                ("a.com", "A"): ["not-an-ip"],
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1"])
        self.assertEqual(len(a["errors"]), 1)
        self.assertIn("not-an-ip", a["errors"][0])
        self.assertEqual(results["status"], "partial")

    def testUnexpectedResolverError(self):
        """A failure inside one branch is recorded against that domain"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all"),
                ("b.com", "TXT"): RuntimeError("resolver crashed"),
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com", "b.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1"])
        self.assertEqual(a["errors"], ["b.com: resolver crashed"])
        self.assertEqual(
            results["resolved_domains"]["b.com"]["errors"],
            ["b.com: resolver crashed"],
        )
        self.assertEqual(results["errors"], ["b.com: resolver crashed"])

    def testMaxDepth(self):
        """With a maximum depth of 1, only the second-level include is an error"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all"),
                ("b.com", "TXT"): spf("ip4:192.0.2.2", "include:c.com", "-all"),
                ("c.com", "TXT"): spf("ip4:192.0.2.3", "-all"),
            }
        )
        results = checkspf.flatten.SPFFlattener(dns, max_depth=1).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1", "192.0.2.2"])
        self.assertEqual(len(a["errors"]), 1)
        self.assertTrue(a["errors"][0].startswith("c.com: "))
        self.assertIn("depth", a["errors"][0])
        self.assertNotIn(("c.com", "TXT"), dns.queries)

        # The includes of a record are already one level deep
        flattener = checkspf.flatten.SPFFlattener(dns, max_depth=1)
        results = flattener.flatten(["b.com"], depth=1)
        b = results["resolved_domains"]["b.com"]
        self.assertEqual(b["ips"], ["192.0.2.2"])
        self.assertTrue(b["errors"][0].startswith("c.com: "))

    def testMaxDepthZero(self):
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all"),
                ("b.com", "TXT"): spf("ip4:192.0.2.2", "-all"),
            }
        )
        results = checkspf.flatten.SPFFlattener(dns, max_depth=0).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1"])
        self.assertTrue(a["errors"][0].startswith("b.com: "))

    def testNotRecursive(self):
        dns = FakeDNSClient(
            {("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all")}
        )
        results = checkspf.flatten.SPFFlattener(dns, recursive=False).flatten(["a.com"])
        a = results["resolved_domains"]["a.com"]
        self.assertEqual(a["ips"], ["192.0.2.1"])
        self.assertEqual(a["nested_includes"], ["b.com"])
        self.assertEqual(a["errors"], [])

    def testFlattenIsRepeatable(self):
        """Identical DNS answers give identical address sets"""
        zone = {
            ("a.com", "TXT"): spf(
                "include:b.com", "include:c.com", "ip6:2001:db8::/32", "-all"
            ),
            ("b.com", "TXT"): spf("ip4:192.0.2.0/24", "ip4:198.51.100.1", "-all"),
            ("c.com", "TXT"): spf("a", "-all"),
            ("c.com", "A"): ["203.0.113.5"],
        }
        first = checkspf.flatten.flatten_spf_domains(["a.com"], FakeDNSClient(zone))
        second = checkspf.flatten.flatten_spf_domains(["a.com"], FakeDNSClient(zone))
        self.assertEqual(
            set(first["resolved_domains"]["a.com"]["ips"]),
            set(second["resolved_domains"]["a.com"]["ips"]),
        )
        self.assertEqual(first["total_ips"], 4)

    def testUnflattenableTerms(self):
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf(
                    "exists:%{i}._spf.a.com", "ptr", "include:%{d}.b.com", "-all"
                )
            }
        )
        result = checkspf.flatten.SPFFlattener(dns).resolve_spf_domain("a.com")
        self.assertEqual(result["ips"], [])
        self.assertEqual(len(result["unflattened"]), 3)
        self.assertEqual(result["dns_lookups"], 3)

    def testSuggestionWithUnflattenableTermsIsUnsafe(self):
        """Addresses alone cannot replace an include that still needs lookups"""
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("include:b.com", "-all"),
                ("b.com", "TXT"): spf(
                    "ip4:192.0.2.2", "exists:%{i}._spf.b.com", "-all"
                ),
            }
        )
        results = checkspf.check_spf("a.com", dns_client=dns)
        suggestions = results["flattening_suggestions"]
        self.assertEqual(len(suggestions), 1)
        self.assertEqual(suggestions[0]["flattened_lookups"], 1)
        self.assertFalse(suggestions[0]["safe"])
        self.assertIsNone(results["flattened_record"])
        self.assertIsNone(results["flattened_record_validation"])

    def testRedirectIsFollowed(self):
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "redirect=b.com"),
                ("b.com", "TXT"): spf("ip4:192.0.2.2", "-all"),
            }
        )
        result = checkspf.flatten.SPFFlattener(dns).resolve_spf_domain("a.com")
        self.assertEqual(result["ips"], ["192.0.2.1", "192.0.2.2"])

    def testMissingSPFRecordIsPartial(self):
        dns = FakeDNSClient(
            {
                ("a.com", "TXT"): spf("ip4:192.0.2.1", "include:b.com", "-all"),
                ("b.com", "TXT"): ["not an spf record"],
            }
        )
        results = checkspf.flatten.SPFFlattener(dns).flatten(["a.com", "c.com"])
        self.assertEqual(results["status"], "partial")
        self.assertEqual(
            results["resolved_domains"]["a.com"]["ips"], ["192.0.2.1"]
        )
        self.assertIn("does not exist", results["resolved_domains"]["c.com"]["errors"][0])
        self.assertEqual(len(results["errors"]), 2)

    def testFlattenTimeout(self):
        """Unresolved domains get a timeout error when time runs out"""
        dns = SlowDNSClient({("a.com", "TXT"): spf("ip4:192.0.2.1", "-all")})
        started = time.monotonic()
        results = checkspf.flatten.SPFFlattener(dns, timeout=0.1).flatten(["a.com"])
        self.assertLess(time.monotonic() - started, 0.9)
        self.assertIn("Timed out", results["resolved_domains"]["a.com"]["errors"][0])
        self.assertEqual(results["status"], "partial")

    def testManyIncludesWithOneWorker(self):
        """Nested includes cannot exhaust a small thread pool"""
        zone = {
            ("root.com", "TXT"): spf(*[f"include:n{i}.com" for i in range(6)], "-all")
        }
        for i in range(6):
            zone[(f"n{i}.com", "TXT")] = spf(f"include:leaf{i}.com", "-all")
            zone[(f"leaf{i}.com", "TXT")] = spf(f"ip4:192.0.2.{i}", "-all")
        flattener = checkspf.flatten.SPFFlattener(
            FakeDNSClient(zone), max_workers=1, timeout=10
        )
        results = flattener.flatten(["root.com"])
        self.assertEqual(results["status"], "safe")
        self.assertEqual(results["total_ips"], 6)

    def testTransientFailuresAreRetried(self):
        dns = FlakyDNSClient({("a.com", "TXT"): ["v=spf1 -all"]}, timeout_retries=1)
        self.assertEqual(dns.query_txt("a.com"), ["v=spf1 -all"])
        dns = FlakyDNSClient({("a.com", "TXT"): ["v=spf1 -all"]}, timeout_retries=0)
        self.assertRaises(checkspf.utils.DNSExceptionTimeout, dns.query_txt, "a.com")

    def testNXDOMAINIsNotRetried(self):
        dns = FakeDNSClient({}, timeout_retries=3)
        self.assertRaises(checkspf.utils.DNSExceptionNXDOMAIN, dns.query_txt, "a.com")
        self.assertEqual(len(dns.queries), 1)

    def testAnswersAreCachedPerClient(self):
        zone = {("a.com", "TXT"): ["v=spf1 -all"]}
        dns = FakeDNSClient(zone)
        dns.query_txt("a.com")
        dns.query_txt("A.com")
        self.assertEqual(len(dns.queries), 1)
        other = FakeDNSClient(zone)
        other.query_txt("a.com")
        self.assertEqual(len(other.queries), 1)

    def testParseMXAnswers(self):
        hosts = checkspf.utils.parse_mx_answers(
            "example.com", ["20 b.example.com.", "10 A.example.com.", "0 ."]
        )
        self.assertEqual(
            hosts,
            [
                {"priority": 10, "exchange": "a.example.com"},
                {"priority": 20, "exchange": "b.example.com"},
            ],
        )
        self.assertRaises(
            checkspf.utils.DNSExceptionMalformed,
            checkspf.utils.parse_mx_answers,
            "example.com",
            ["ten mx.example.com"],
        )

    def testDoHClient(self):
        session = FakeSession(
            {
                ("example.com", "TXT"): {
                    "Status": 0,
                    "Answer": [
                        {"name": "example.com", "type": 5, "data": "alias."},
                        {
                            "name": "example.com",
                            "type": 16,
                            "data": '"v=spf1 ip4:192.0.2.1 " "-all"',
                        },
                    ],
                },
                ("example.com", "MX"): {
                    "Status": 0,
                    "Answer": [{"type": 15, "data": "10 mx.example.com."}],
                },
                ("missing.example", "TXT"): {"Status": 3},
                ("empty.example", "TXT"): {"Status": 0},
            }
        )
        dns = checkspf.utils.DoHDNSClient(session=session)
        self.assertEqual(dns.query_txt("example.com"), ["v=spf1 ip4:192.0.2.1 -all"])
        self.assertEqual(
            dns.query_mx("example.com"),
            [{"priority": 10, "exchange": "mx.example.com"}],
        )
        self.assertRaises(
            checkspf.utils.DNSExceptionNXDOMAIN, dns.query_txt, "missing.example"
        )
        self.assertRaises(
            checkspf.utils.DNSExceptionNoAnswer, dns.query_txt, "empty.example"
        )

    def testDoHClientRejectsMalformedAddresses(self):
        session = FakeSession(
            {
                ("example.com", "A"): {
                    "Status": 0,
                    "Answer": [{"name": "example.com", "type": 1, "data": "bogus"}],
                },
            }
        )
        dns = checkspf.utils.DoHDNSClient(session=session)
        self.assertRaises(
            checkspf.utils.DNSExceptionMalformed, dns.query_a, "example.com"
        )

    def testGradeImpact(self):
        grade = checkspf.optimizer.grade_impact
        self.assertEqual(grade(0), "low")
        self.assertEqual(grade(4.9), "low")
        self.assertEqual(grade(5), "medium")
        self.assertEqual(grade(24.9), "medium")
        self.assertEqual(grade(25), "high")
        self.assertEqual(grade(100), "high")
        self.assertRaises(ValueError, grade, 101)
        self.assertRaises(ValueError, grade, -1)

    def testFlatteningSuggestions(self):
        """Includes are replaced by addresses with the same qualifier"""
        record = checkspf.spf.parse_spf_record(
            "v=spf1 ~include:esp.example.net ip4:192.0.2.1 -all"
        )
        dns = FakeDNSClient(
            {
                ("esp.example.net", "TXT"): spf(
                    "include:deep.example.net", "ip4:198.51.100.0/24", "-all"
                ),
                ("deep.example.net", "TXT"): spf("ip6:2001:db8::/32", "-all"),
            }
        )
        flattening = checkspf.flatten.flatten_spf_domains(["esp.example.net"], dns)
        suggestions = checkspf.optimizer.get_flattening_suggestions(
            record, flattening, mail_volume_percentage=30
        )
        self.assertEqual(len(suggestions), 1)
        suggestion = suggestions[0]
        self.assertEqual(suggestion["mechanism"], "~include:esp.example.net")
        self.assertEqual(suggestion["estimated_savings"], 2)
        self.assertEqual(suggestion["impact"], "high")
        self.assertTrue(suggestion["safe"])
        self.assertEqual(
            suggestion["implementation"],
            "v=spf1 ~ip4:198.51.100.0/24 ~ip6:2001:db8::/32 ip4:192.0.2.1 -all",
        )

    def testNoSuggestionWithoutSavings(self):
        """An include whose record needs as many lookups flattened is kept"""
        record = checkspf.spf.parse_spf_record("v=spf1 include:esp.example.net -all")
        flattening = {
            "resolved_domains": {
                "esp.example.net": {
                    "ips": [],
                    "nested_includes": [],
                    "errors": [],
                    "dns_lookups": 1,
                    "unflattened": ["exists:%{i}.esp.example.net"],
                }
            },
            "total_ips": 0,
            "errors": [],
            "status": "safe",
        }
        self.assertEqual(
            checkspf.optimizer.get_flattening_suggestions(record, flattening), []
        )

    def testBuildFlattenedRecordKeepsRedirect(self):
        record = checkspf.spf.parse_spf_record(
            "v=spf1 include:a.example include:b.example redirect=c.example"
        )
        flattened = checkspf.optimizer.build_flattened_spf_record(
            record, {"b.example": ["192.0.2.2", "192.0.2.1"]}
        )
        self.assertEqual(
            flattened,
            "v=spf1 include:a.example ip4:192.0.2.1 ip4:192.0.2.2 redirect=c.example",
        )

    def testConsolidateIPAddresses(self):
        consolidated = checkspf.optimizer.consolidate_ip_addresses(
            ["192.0.2.0/25", "192.0.2.128/25", "192.0.2.5", "2001:db8::1"]
        )
        self.assertEqual(consolidated, ["192.0.2.0/24", "2001:db8::1"])

    def testValidateFlattenedRecord(self):
        ips = " ".join(f"ip4:192.0.{i}.0/24" for i in range(40))
        validation = checkspf.optimizer.validate_flattened_record(
            f"v=spf1 {ips} -all"
        )
        self.assertTrue(validation["is_valid"])
        self.assertEqual(validation["lookup_count"], 0)
        self.assertGreater(len(validation["txt_strings"]), 1)
        self.assertTrue(all(len(s) <= 255 for s in validation["txt_strings"]))
        self.assertEqual(len(validation["warnings"]), 2)

    def testOptimizationSuggestions(self):
        record = checkspf.spf.parse_spf_record(
            "v=spf1 ptr ip4:192.0.2.0/24 ip4:192.0.2.5 a a -all"
        )
        suggestions = checkspf.optimizer.get_optimization_suggestions(record)
        types = [s["type"] for s in suggestions]
        self.assertEqual(types[0], "remove_ptr")
        self.assertEqual(types.count("remove_redundant"), 2)
        self.assertIn("use_ip4", types)

    def testRiskAssessment(self):
        record = checkspf.spf.parse_spf_record(
            "v=spf1 " + " ".join(f"include:{i}.example" for i in range(9)) + " -all"
        )
        assessment = checkspf.optimizer.get_risk_assessment(record)
        self.assertEqual(assessment["current_risk"], "high")
        self.assertEqual(assessment["lookup_utilization"], 90.0)
        self.assertEqual(checkspf.lookups.get_risk_level(11), "critical")

    def testAnalyzeRecordMacros(self):
        record = checkspf.spf.parse_spf_record(
            "v=spf1 exists:%{p}.%{i}._spf.example.com "
            "exists:%{s}.%{t}.example.com -all"
        )
        analysis = checkspf.optimizer.analyze_spf_record_macros(record)
        self.assertEqual(analysis["total_macros"], 4)
        self.assertEqual(len(analysis["terms"]), 2)
        self.assertEqual(analysis["terms"][0]["risk_level"], "high")
        self.assertIsNotNone(analysis["terms"][1]["expanded_example"])
        self.assertIn(analysis["risk_level"], ["high", "critical"])

    def testCheckSPF(self):
        dns = FakeDNSClient(
            {
                ("example.com", "TXT"): [
                    "google-site-verification=abc",
                    "v=spf1 include:esp.example.net mx -all",
                ],
                ("example.com", "MX"): ["10 mx.example.com"],
                ("mx.example.com", "A"): ["192.0.2.25"],
                ("esp.example.net", "TXT"): spf(
                    "include:esp2.example.net", "ip4:198.51.100.0/24", "-all"
                ),
                ("esp2.example.net", "TXT"): spf("ip4:203.0.113.0/24", "-all"),
            }
        )
        results = checkspf.check_spf("example.com", dns_client=dns)
        self.assertTrue(results["valid"])
        self.assertEqual(results["lookups"]["total_lookups"], 2)
        self.assertEqual(results["flattening"]["status"], "safe")
        self.assertEqual(
            results["flattened_record"],
            "v=spf1 ip4:198.51.100.0/24 ip4:203.0.113.0/24 mx -all",
        )
        self.assertTrue(results["flattened_record_validation"]["is_valid"])
        self.assertIn("example.com", checkspf.results_to_csv(results))
        self.assertIn('"domain": "example.com"', checkspf.results_to_json(results))

    def testCheckSPFMissingRecord(self):
        dns = FakeDNSClient({("example.com", "TXT"): ["hello"]})
        results = checkspf.check_spf("example.com", dns_client=dns)
        self.assertFalse(results["valid"])
        self.assertIn("error", results)
        self.assertIn("example.com", checkspf.results_to_csv(results))

    @unittest.skipUnless(os.path.exists("/etc/resolv.conf"), "no network")
    @unittest.skipUnless(os.environ.get("CHECKSPF_NETWORK_TESTS"), "network tests")
    def testKnownGood(self):
        """Domains with known good SPF records"""
        results = checkspf.check_domains(["fbi.gov", "ssa.gov"])
        for result in results:
            self.assertTrue(result["valid"], result.get("error"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
