#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Audits the email authentication posture of domains"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from argparse import ArgumentParser

from mailvet import (
    __version__,
    analyze_multiple,
    output_to_file,
    results_to_csv,
    results_to_json,
)
from mailvet._constants import (
    CHECK_NAMES,
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_CONCURRENCY,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_HTTP_TIMEOUT,
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


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip() != ""]


def _read_domains_file(path: str) -> list[str]:
    with open(path) as domains_file:
        lines = domains_file.readlines()
    domains = []
    for line in lines:
        line = line.strip()
        if line == "" or line.startswith("#"):
            continue
        domains.append(line.split(",")[0].strip())
    return domains


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="+",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "--skip",
        type=_split_list,
        help=f"comma separated checks to skip ({', '.join(CHECK_NAMES)})",
    )
    arg_parser.add_argument(
        "--only",
        type=_split_list,
        help=f"comma separated checks to run ({', '.join(CHECK_NAMES)})",
    )
    arg_parser.add_argument(
        "--dkim-selectors",
        type=_split_list,
        help="comma separated DKIM selectors to check instead of the "
        "common selectors",
    )
    arg_parser.add_argument(
        "-b", "--bimi-selector", default="default", help="the BIMI selector to use"
    )
    arg_parser.add_argument(
        "--verify-tls-rpt-endpoints",
        action="store_true",
        help="check that TLS-RPT reporting endpoints are reachable",
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
        "-t",
        "--timeout",
        help="number of seconds each check may take "
        f"(default {DEFAULT_CHECK_TIMEOUT})",
        type=float,
        default=DEFAULT_CHECK_TIMEOUT,
    )
    arg_parser.add_argument(
        "--dns-timeout",
        help="number of seconds to wait for an answer from DNS "
        f"(default {DEFAULT_DNS_TIMEOUT})",
        type=float,
        default=DEFAULT_DNS_TIMEOUT,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout (default 2)",
        type=int,
        default=2,
    )
    arg_parser.add_argument(
        "--http-timeout",
        help="number of seconds to wait for an HTTP response "
        f"(default {DEFAULT_HTTP_TIMEOUT})",
        type=float,
        default=DEFAULT_HTTP_TIMEOUT,
    )
    arg_parser.add_argument(
        "-c",
        "--concurrency",
        help=f"number of domains to check at once (default {DEFAULT_CONCURRENCY})",
        type=int,
        default=DEFAULT_CONCURRENCY,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    output_format = args.format.lower()
    if output_format not in ("json", "csv"):
        arg_parser.error(f"Unsupported output format: {args.format}")
    if args.concurrency < 1:
        arg_parser.error("--concurrency must be at least 1")

    domains = args.domain
    if len(domains) == 1 and os.path.exists(domains[0]):
        domains = _read_domains_file(domains[0])
    domains = list(dict.fromkeys(domains))

    try:
        results = asyncio.run(
            analyze_multiple(
                domains,
                concurrency=args.concurrency,
                checks=args.only,
                skip_checks=args.skip,
                dkim_selectors=args.dkim_selectors,
                bimi_selector=args.bimi_selector,
                verify_tls_rpt_endpoints=args.verify_tls_rpt_endpoints,
                nameservers=args.nameserver,
                timeout=args.timeout,
                dns_timeout=args.dns_timeout,
                timeout_retries=args.timeout_retries,
                http_timeout=args.http_timeout,
            )
        )
    except ValueError as e:
        arg_parser.error(str(e))
    if len(results) == 1:
        output = results[0]
    else:
        output = results

    if args.output is None:
        if output_format == "json":
            print(results_to_json(output))
        elif output_format == "csv":
            print(results_to_csv(output))
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            else:
                if json_path:
                    output_to_file(path, results_to_json(output))
                elif csv_path:
                    output_to_file(path, results_to_csv(output))

    if any(result["grade"] == "F" for result in results):
        sys.exit(1)


if __name__ == "__main__":
    _main()
