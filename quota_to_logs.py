#!/usr/bin/env python3
import argparse
import datetime
import sys
from google.cloud import logging as cloud_logging

from gcp_quota_cli import DEFAULT_REGEX_FROM, DEFAULT_REGEX_TO, add_api_options, env, make_client, setup_logging
from quota_diff import QuotaCompareError, compare_environments

def build_payload(from_filter, to_filter, result):
    report = result.as_dict()
    return {
        "from_filter": from_filter,
        "to_filter": to_filter,
        "fetched_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "discrepancies": report["discrepancies"],
        "notices": report["notices"],
    }

def write_log(project, payload, logger_name="quota_comparison"):
    client = cloud_logging.Client(project=project)
    logger = client.logger(logger_name)
    severity = "WARNING" if payload["discrepancies"] else "INFO"
    logger.log_struct(payload, severity=severity)

def main(argv=None):
    p = argparse.ArgumentParser(description="Compare GCP quotas and write the result as a structured Cloud Logging entry.")
    p.add_argument("--project", required=True, help="GCP project ID that receives the log entry")
    p.add_argument("--logger", default="quota_comparison", help="Logger name in Cloud Logging")
    p.add_argument("--from", dest="from_filter", default=env("FROM"), required=env("FROM") is None)
    p.add_argument("--to", dest="to_filter", default=env("TO"), required=env("TO") is None)
    p.add_argument("--regex-from", default=env("REGEX_FROM", DEFAULT_REGEX_FROM))
    p.add_argument("--regex-to", default=env("REGEX_TO", DEFAULT_REGEX_TO))
    add_api_options(p)
    args = p.parse_args(argv)
    setup_logging(args.log_dir)

    try:
        client = make_client(args)
        result = compare_environments(client, client, args.from_filter, args.to_filter,
                                      args.regex_from, args.regex_to)
    except QuotaCompareError as e:
        print("Quota comparison failed:\n", e, file=sys.stderr)
        return 1

    payload = build_payload(args.from_filter, args.to_filter, result)
    write_log(args.project, payload, args.logger)
    print(f"Wrote {len(payload['discrepancies'])} quota differences to Cloud Logging logger:", args.logger)
    return 0

if __name__ == "__main__":
    sys.exit(main())
