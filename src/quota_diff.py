"""quota_diff - match projects across two environments and diff their quotas

Projects on the "from" side are paired with projects on the "to" side by
extracting an environment-independent name from the from-project id and
substituting it into a target pattern. Each matched pair is then compared
metric by metric, at project level and per region.
"""

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

METRIC_MISSING = 'metric-missing'
REGION_MISSING = 'region-missing'
NO_MATCH = 'no-match'

# ══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ══════════════════════════════════════════════════════════════════════════════
class QuotaCompareError(Exception):
    """Base class for errors that abort a comparison run"""


class DirectoryError(QuotaCompareError):
    """Listing projects failed (auth, network, bad filter)"""


class QuotaFetchError(QuotaCompareError):
    def __init__(self, project_id, message=None):
        self.project_id = project_id
        super().__init__(message or f"Could not fetch quotas for project {project_id}")


class InvalidPattern(QuotaCompareError):
    pass


class PatternMismatch(QuotaCompareError):
    def __init__(self, project_id, pattern):
        self.project_id = project_id
        self.pattern = pattern
        super().__init__(f"Project {project_id} does not match source pattern {pattern!r}")

# ══════════════════════════════════════════════════════════════════════════════
# DATA MODEL
# ══════════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class ProjectRef:
    project_id: str
    display_name: str = ''


@dataclass(frozen=True)
class QuotaEntry:
    metric: str
    limit: float


@dataclass(frozen=True)
class ProjectQuotaSnapshot:
    project: ProjectRef
    project_quotas: tuple = ()
    # empty (or None) when the region query failed; no regions are compared
    region_quotas: dict | None = None

    @property
    def project_id(self):
        return self.project.project_id


@dataclass(frozen=True)
class Discrepancy:
    from_project_id: str
    to_project_id: str
    metric: str
    from_limit: float
    to_limit: float
    region: str | None = None

    def describe(self) -> str:
        src, dst = self.from_project_id, self.to_project_id
        if self.region:
            src, dst = f"{src}/{self.region}", f"{dst}/{self.region}"
        return (f"[{src}] [{self.metric}] ({self.from_limit:f}) limit differs from "
                f"[{dst}] [{self.metric}] ({self.to_limit:f})")

    def as_dict(self) -> dict:
        return {
            'from_project_id': self.from_project_id,
            'to_project_id': self.to_project_id,
            'region': self.region,
            'metric': self.metric,
            'from_limit': self.from_limit,
            'to_limit': self.to_limit,
        }


@dataclass(frozen=True)
class Notice:
    kind: str
    project_id: str
    message: str
    region: str | None = None
    metric: str | None = None

    def __str__(self):
        return self.message

    def as_dict(self) -> dict:
        return {
            'kind': self.kind,
            'project_id': self.project_id,
            'region': self.region,
            'metric': self.metric,
            'message': self.message,
        }


@dataclass(frozen=True)
class DiffResult:
    # Discrepancies and notices in the order they were found
    items: tuple = ()

    @property
    def discrepancies(self):
        return tuple(i for i in self.items if isinstance(i, Discrepancy))

    @property
    def notices(self):
        return tuple(i for i in self.items if isinstance(i, Notice))


@dataclass(frozen=True)
class ComparisonResult:
    discrepancies: tuple = ()
    notices: tuple = ()
    # (from ProjectRef, to ProjectRef or None) for every from-project examined
    pairs: tuple = field(default=())

    def as_dict(self) -> dict:
        return {
            'discrepancies': [d.as_dict() for d in self.discrepancies],
            'notices': [n.as_dict() for n in self.notices],
            'pairs': [
                {'from': f.project_id, 'to': t.project_id if t else None}
                for f, t in self.pairs
            ],
        }

# ══════════════════════════════════════════════════════════════════════════════
# NAME MATCHER
# ══════════════════════════════════════════════════════════════════════════════
def compile_source_pattern(pattern: str) -> re.Pattern:
    """Compile the from-side pattern; it must have exactly one capture group."""
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise InvalidPattern(f"Invalid source pattern {pattern!r}: {e}") from e
    if compiled.groups != 1:
        raise InvalidPattern(
            f"Source pattern {pattern!r} must have exactly one capture group, has {compiled.groups}")
    return compiled


def extract_name(project_id: str, source_pattern: re.Pattern) -> str:
    match = source_pattern.search(project_id)
    if match is None or match.group(1) is None:
        raise PatternMismatch(project_id, source_pattern.pattern)
    return match.group(1)


def build_target_pattern(template: str, name: str) -> re.Pattern:
    try:
        return re.compile(template % name)
    except (TypeError, ValueError, re.error) as e:
        raise InvalidPattern(f"Target template {template!r} with name {name!r}: {e}") from e


def find_target(to_projects, target_pattern: re.Pattern) -> ProjectRef | None:
    """First project, in the given order, whose id satisfies target_pattern."""
    for project in to_projects:
        if target_pattern.search(project.project_id):
            return project
    return None


def match_project(from_project, to_projects, source_pattern, target_template):
    name = extract_name(from_project.project_id, source_pattern)
    target = build_target_pattern(target_template, name)
    return find_target(to_projects, target)


def match_projects(from_projects, to_projects, source_pattern, target_template):
    """Yield (from_project, to_project or None) in from_projects order.

    source_pattern may be a string or a compiled pattern. PatternMismatch
    propagates on the first from-project the pattern cannot read.
    """
    if isinstance(source_pattern, str):
        source_pattern = compile_source_pattern(source_pattern)
    to_projects = list(to_projects)
    for from_project in from_projects:
        yield from_project, match_project(from_project, to_projects, source_pattern, target_template)

# ══════════════════════════════════════════════════════════════════════════════
# QUOTA DIFFER
# ══════════════════════════════════════════════════════════════════════════════
def _index_by_metric(entries):
    index = {}
    for entry in entries or ():
        index.setdefault(entry.metric, entry)
    return index


def diff_quotas(from_entries, to_entries, from_project_id, to_project_id, region=None):
    """Compare two quota lists metric by metric.

    Returns Discrepancy and Notice items in from_entries order. Only metrics
    present on both sides can produce a Discrepancy; a from-side metric missing
    on the to-side gives a metric-missing notice. Limits are compared exactly.
    """
    to_index = _index_by_metric(to_entries)
    items = []
    where = f"[{from_project_id}]/{region}" if region else f"[{from_project_id}]"

    for entry in from_entries or ():
        other = to_index.get(entry.metric)
        if other is None:
            items.append(Notice(
                kind=METRIC_MISSING,
                project_id=from_project_id,
                region=region,
                metric=entry.metric,
                message=f"{where}: Metric {entry.metric} does not exist",
            ))
            continue
        if other.limit != entry.limit:
            items.append(Discrepancy(
                from_project_id=from_project_id,
                to_project_id=to_project_id,
                region=region,
                metric=entry.metric,
                from_limit=entry.limit,
                to_limit=other.limit,
            ))
    return items


def diff_snapshots(from_snapshot: ProjectQuotaSnapshot, to_snapshot: ProjectQuotaSnapshot) -> DiffResult:
    from_id, to_id = from_snapshot.project_id, to_snapshot.project_id

    items = diff_quotas(
        from_snapshot.project_quotas, to_snapshot.project_quotas, from_id, to_id)

    to_regions = to_snapshot.region_quotas or {}
    for region, entries in (from_snapshot.region_quotas or {}).items():
        if region not in to_regions:
            items.append(Notice(
                kind=REGION_MISSING,
                project_id=from_id,
                region=region,
                message=f"[{from_id}]: Region {region} does not exist",
            ))
            continue
        items.extend(diff_quotas(entries, to_regions[region], from_id, to_id, region=region))

    return DiffResult(tuple(items))

# ══════════════════════════════════════════════════════════════════════════════
# RUN ORCHESTRATOR
# ══════════════════════════════════════════════════════════════════════════════
def log_item(item):
    """Default report emitter: discrepancies as warnings, notices as info."""
    if isinstance(item, Discrepancy):
        logger.warning(item.describe())
    else:
        logger.info(str(item))


def compare_environments(directory, quota_source, from_filter, to_filter,
                         source_pattern, target_template, emit=None) -> ComparisonResult:
    """Compare quotas of every from-project with its matching to-project.

    directory.list_projects(filter) returns ProjectRefs; quota_source
    .get_project_quotas(project_id) returns a ProjectQuotaSnapshot or None.
    Every discrepancy and notice is passed to emit as soon as it is found.
    Raises DirectoryError, QuotaFetchError, PatternMismatch or InvalidPattern.
    """
    emit = emit or log_item
    compiled = compile_source_pattern(source_pattern) if isinstance(source_pattern, str) else source_pattern

    from_projects = list(directory.list_projects(from_filter))
    to_projects = list(directory.list_projects(to_filter))
    logger.info("Comparing %d from-projects against %d to-projects", len(from_projects), len(to_projects))

    discrepancies, notices, pairs = [], [], []
    for from_project, to_project in match_projects(from_projects, to_projects, compiled, target_template):
        pairs.append((from_project, to_project))
        if to_project is None:
            notice = Notice(
                kind=NO_MATCH,
                project_id=from_project.project_id,
                message=f"[{from_project.project_id}]: No matching project found",
            )
            notices.append(notice)
            emit(notice)
            continue

        logger.info("Checking %s against %s", from_project.project_id, to_project.project_id)
        from_snapshot = _fetch(quota_source, from_project)
        to_snapshot = _fetch(quota_source, to_project)

        result = diff_snapshots(from_snapshot, to_snapshot)
        for item in result.items:
            emit(item)
        discrepancies.extend(result.discrepancies)
        notices.extend(result.notices)

    return ComparisonResult(tuple(discrepancies), tuple(notices), tuple(pairs))


def _fetch(quota_source, project):
    snapshot = quota_source.get_project_quotas(project.project_id)
    if snapshot is None:
        raise QuotaFetchError(project.project_id)
    return snapshot
