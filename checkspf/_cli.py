#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Analyzes, optimizes, and flattens SPF records"""

from __future__ import annotations

import os
from argparse import ArgumentParser, BooleanOptionalAction

import logging

from checkspf import (
    __version__,
    analyze_spf_record,
    check_domains,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    DOH_URL,
    FLATTEN_MAX_DEPTH,
    FLATTEN_MAX_WORKERS,
    FLATTEN_TIMEOUT,
)
from checkspf.utils import DNSClient, DoHDNSClient

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


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="*",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "-r", "--record", help="analyze the given SPF record without DNS queries"
    )
    arg_parser.add_argument(
        "--recursive",
        action=BooleanOptionalAction,
        default=True,
        help="resolve nested includes while flattening (default: on)",
    )
    arg_parser.add_argument(
        "--max-depth",
        type=int,
        default=FLATTEN_MAX_DEPTH,
        help="the deepest level of nested includes to resolve "
        f"(default {FLATTEN_MAX_DEPTH})",
    )
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "--doh",
        nargs="?",
        const=DOH_URL,
        help=f"query DNS over HTTPS, optionally at the given URL (default {DOH_URL})",
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS "
        f"(default {DEFAULT_DNS_TIMEOUT})",
        type=float,
        default=DEFAULT_DNS_TIMEOUT,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a transient failure "
        f"(default {DEFAULT_DNS_TIMEOUT_RETRIES})",
        type=int,
        default=DEFAULT_DNS_TIMEOUT_RETRIES,
    )
    arg_parser.add_argument(
        "--flatten-timeout",
        help="number of seconds allowed for flattening each domain "
        f"(default {FLATTEN_TIMEOUT})",
        type=float,
        default=FLATTEN_TIMEOUT,
    )
    arg_parser.add_argument(
        "--workers",
        help=f"maximum number of concurrent DNS resolver threads (default {FLATTEN_MAX_WORKERS})",
        type=int,
        default=FLATTEN_MAX_WORKERS,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "-w",
        "--wait",
        type=float,
        help="number of seconds to wait between checking domains (default 0.0)",
        default=0.0,
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    if args.record is None and len(args.domain) == 0:
        arg_parser.error("one or more domains or --record is required")

    if args.record is not None:
        results = analyze_spf_record(args.record)
    else:
        domains = args.domain
        if len(domains) == 1 and os.path.exists(domains[0]):
            with open(domains[0]) as domains_file:
                domains = domains_file.readlines()
        if args.doh is not None:
            dns_client = DoHDNSClient(
                url=args.doh,
                timeout=args.timeout,
                timeout_retries=args.timeout_retries,
            )
        else:
            dns_client = DNSClient(
                nameservers=args.nameserver,
                timeout=args.timeout,
                timeout_retries=args.timeout_retries,
            )
        results = check_domains(
            domains,
            dns_client=dns_client,
            recursive=args.recursive,
            max_depth=args.max_depth,
            flatten_timeout=args.flatten_timeout,
            max_workers=args.workers,
            wait=args.wait,
        )

    if args.output is None:
        if args.format.lower() == "json":
            results = results_to_json(results)
        elif args.format.lower() == "csv":
            results = results_to_csv(results)
        print(results)
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            else:
                if path.lower().endswith(".json"):
                    output_to_file(path, results_to_json(results))
                elif path.lower().endswith(".csv"):
                    output_to_file(path, results_to_csv(results))


if __name__ == "__main__":
    _main()
