#!/usr/bin/env python3
"""gcp_quota_cli - Compare GCP quotas between two environments

Pairs projects from one environment with their counterparts in another by
naming convention and reports every quota limit that differs.

Usage:
  gcp-quota-compare [command] [options]

Commands:
  compare   Compare project and region quotas of matched projects (default)
  match     Show which projects would be compared, without fetching quotas
  projects  List active projects matching a filter

Examples:
  gcp-quota-compare compare --from "labels.env:dev" --to "labels.env:staging"
  gcp-quota-compare match --from "labels.env:dev" --to "labels.env:prod"
  gcp-quota-compare compare --json report.json --quiet
"""

import sys
import argparse
import json
import logging
import os
from pathlib import Path
from datetime import datetime

from gcp_quotas import GcpClient, RetryPolicy, get_credentials
from quota_diff import (
    Discrepancy,
    QuotaCompareError,
    compare_environments,
    compile_source_pattern,
    match_projects,
)

__version__ = '0.1.0'

# ══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════
ENV_PREFIX = 'GCP_QUOTA_COMPARER_'
LOG_DIR = Path('logs')
DEFAULT_REGEX_FROM = r'prj-\w+-(?P<Name>.*)-[a-zA-Z0-9]{4}$'
DEFAULT_REGEX_TO = r'prj-\w+-%s-[a-zA-Z0-9]{4}$'

log = logging.getLogger(__name__)


def env(name, default=None):
    return os.environ.get(ENV_PREFIX + name, default)


def parse_statuses(value):
    try:
        return tuple(int(s) for s in str(value).replace(' ', '').split(',') if s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid status list: {value!r}")

# ══════════════════════════════════════════════════════════════════════════════
# UTILS & LOGGING
# ══════════════════════════════════════════════════════════════════════════════
class C:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    END = '\033[0m'

def setup_logging(log_dir=LOG_DIR):
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fn = log_dir / f'gcp_quota_compare_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
    handlers = [logging.FileHandler(fn, encoding='utf-8')]
    # Console feedback goes through the print helpers; the log file keeps everything.
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s',
                        handlers=handlers, force=True)
    return fn

def ok(msg): print(f"{C.GREEN}✓{C.END} {msg}")
def warn(msg): print(f"{C.YELLOW}⚠{C.END} {msg}")
def err(msg): print(f"{C.RED}✗{C.END} {msg}", file=sys.stderr)
def info(msg): print(f"{C.CYAN}ℹ{C.END} {msg}")
def header(msg): print(f"\n{C.BOLD}{C.HEADER}{'═'*60}{C.END}\n{C.BOLD}{msg}{C.END}\n{C.HEADER}{'═'*60}{C.END}")
def subheader(msg): print(f"\n{C.BOLD}{C.BLUE}▸ {msg}{C.END}")

# ══════════════════════════════════════════════════════════════════════════════
# REPORTING
# ══════════════════════════════════════════════════════════════════════════════
def make_emitter(quiet=False):
    """Report emitter: print each discrepancy/notice as it is found, and log it."""
    def emit(item):
        if isinstance(item, Discrepancy):
            log.warning(item.describe())
            print(f"  {C.RED}•{C.END} {item.describe()}")
        else:
            log.info(str(item))
            if not quiet:
                print(f"  {C.DIM}{item}{C.END}")
    return emit

def write_json_report(path, result, args):
    report = {
        'from': args.from_filter,
        'to': args.to_filter,
        'generated_at': datetime.now().isoformat(),
        **result.as_dict(),
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, indent=2), encoding='utf-8')
    return path

def make_client(args):
    creds = get_credentials(args.token, args.client_secrets)
    retry = RetryPolicy(
        max_retries=args.max_retries,
        jitter_base=args.backoff_jitter,
        max_backoff=args.max_backoff,
        statuses=args.retry_statuses,
    )
    return GcpClient(creds, timeout=args.http_timeout, retry=retry)

# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════
def cmd_compare(args):
    """Compare quotas"""
    header(f"COMPARE: {args.from_filter} → {args.to_filter}")
    client = make_client(args)

    result = compare_environments(
        client, client,
        args.from_filter, args.to_filter,
        args.regex_from, args.regex_to,
        emit=make_emitter(args.quiet),
    )

    subheader("Summary")
    matched = sum(1 for _, t in result.pairs if t is not None)
    info(f"Projects compared: {matched}/{len(result.pairs)}")
    info(f"Notices: {len(result.notices)}")
    if result.discrepancies:
        warn(f"Found {len(result.discrepancies)} quota differences")
    else:
        ok("No quota differences found")

    if args.json:
        path = write_json_report(args.json, result, args)
        ok(f"Wrote report to {path}")
    return result


def cmd_match(args):
    """Show project pairs"""
    header(f"MATCH: {args.from_filter} → {args.to_filter}")
    client = make_client(args)
    source = compile_source_pattern(args.regex_from)
    from_projects = client.list_projects(args.from_filter)
    to_projects = client.list_projects(args.to_filter)

    pairs = list(match_projects(from_projects, to_projects, source, args.regex_to))
    print(f"{'From':<40} {'To'}")
    print("─" * 80)
    for f, t in pairs:
        print(f"{f.project_id[:38]:<40} {t.project_id if t else C.YELLOW + '(no match)' + C.END}")
    info(f"Matched: {sum(1 for _, t in pairs if t)}/{len(pairs)}")
    return pairs


def cmd_projects(args):
    """List projects"""
    header(f"PROJECTS: {args.filter}")
    client = make_client(args)
    projects = client.list_projects(args.filter)
    print(f"{'Project ID':<40} {'Name'}")
    print("─" * 80)
    for p in sorted(projects, key=lambda x: x.project_id):
        print(f"{p.project_id[:38]:<40} {p.display_name}")
    info(f"Total: {len(projects)}")
    return projects

# ══════════════════════════════════════════════════════════════════════════════
# MAIN
# ══════════════════════════════════════════════════════════════════════════════
def add_api_options(p):
    p.add_argument('--token', default=env('TOKEN'), help='Authorized user token file')
    p.add_argument('--client-secrets', default=env('CLIENT_SECRETS'),
                   help='OAuth client secrets; runs the browser flow when no valid token exists')
    p.add_argument('--max-retries', type=int, default=env('MAX_RETRIES', '0'),
                   help='Max retries on retryable HTTP statuses')
    p.add_argument('--http-timeout', type=float, default=env('HTTP_TIMEOUT', '10'),
                   help='Seconds to wait for a Google API response')
    p.add_argument('--max-backoff', type=float, default=env('MAX_BACKOFF_DURATION', '5'),
                   help='Max seconds between retries')
    p.add_argument('--backoff-jitter', type=float, default=env('BACKOFF_JITTER_BASE', '1'),
                   help='Base seconds for exponential backoff with jitter')
    p.add_argument('--retry-statuses', type=parse_statuses,
                   default=env('RETRY_STATUSES', '503'),
                   help='Comma separated HTTP statuses that trigger a retry')
    p.add_argument('--log-dir', default=LOG_DIR, type=Path)

def add_compare_options(p):
    p.add_argument('--from', dest='from_filter', default=env('FROM'), help='The environment to compare from')
    p.add_argument('--to', dest='to_filter', default=env('TO'), help='The environment to compare to')
    p.add_argument('--regex-from', default=env('REGEX_FROM', DEFAULT_REGEX_FROM),
                   help='Pattern with one capture group extracting the name from source project ids')
    p.add_argument('--regex-to', default=env('REGEX_TO', DEFAULT_REGEX_TO),
                   help='Target project pattern; %%s is replaced by the extracted name')
    add_api_options(p)

def build_parser():
    parser = argparse.ArgumentParser(prog='gcp-quota-compare', description='GCP Quota Comparer')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='cmd')

    p_cmp = sub.add_parser('compare', help='Compare quotas of matched projects')
    add_compare_options(p_cmp)
    p_cmp.add_argument('--json', type=Path, help='Write the report as JSON')
    p_cmp.add_argument('--quiet', action='store_true', help="Don't print notices")

    p_match = sub.add_parser('match', help='Show matched project pairs')
    add_compare_options(p_match)

    p_proj = sub.add_parser('projects', help='List active projects')
    p_proj.add_argument('filter', nargs='?', default='')
    add_api_options(p_proj)
    return parser

def main(argv=None):
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in ('compare', 'match', 'projects', '-h', '--help', '--version'):
        argv.insert(0, 'compare')  # compare is the default command
    args = parser.parse_args(argv)

    if args.cmd in ('compare', 'match'):
        missing = [flag for flag, v in (('--from', args.from_filter), ('--to', args.to_filter)) if not v]
        if missing:
            parser.error(f"{', '.join(missing)} required (or set {ENV_PREFIX}FROM / {ENV_PREFIX}TO)")

    setup_logging(args.log_dir)

    try:
        if args.cmd == 'compare': cmd_compare(args)
        elif args.cmd == 'match': cmd_match(args)
        elif args.cmd == 'projects': cmd_projects(args)
    except QuotaCompareError as e:
        log.error("%s", e)
        err(str(e))
        return 1
    return 0

if __name__ == '__main__':
    sys.exit(main())
