"""
Tests for project matching and quota diffing.
"""

import pytest

from quota_diff import (
    METRIC_MISSING,
    NO_MATCH,
    REGION_MISSING,
    Discrepancy,
    InvalidPattern,
    PatternMismatch,
    ProjectQuotaSnapshot,
    ProjectRef,
    QuotaEntry,
    QuotaFetchError,
    build_target_pattern,
    compare_environments,
    compile_source_pattern,
    diff_quotas,
    diff_snapshots,
    extract_name,
    find_target,
    match_projects,
)

SOURCE = r'prj-\w+-(?P<Name>.*)-[a-zA-Z0-9]{4}$'
TARGET = r'prj-\w+-%s-[a-zA-Z0-9]{4}$'


def snapshot(project_id, quotas=None, regions=None):
    return ProjectQuotaSnapshot(
        project=ProjectRef(project_id),
        project_quotas=tuple(QuotaEntry(m, l) for m, l in (quotas or {}).items()),
        region_quotas=None if regions is None else {
            r: tuple(QuotaEntry(m, l) for m, l in q.items()) for r, q in regions.items()
        },
    )


class FakeCloud:
    def __init__(self, projects, snapshots):
        self.projects = projects
        self.snapshots = snapshots
        self.fetched = []

    def list_projects(self, filter_expression):
        return self.projects[filter_expression]

    def get_project_quotas(self, project_id):
        self.fetched.append(project_id)
        return self.snapshots.get(project_id)


# ── Name matcher ──────────────────────────────────────────────────────────────

def test_extract_name_from_project_id() -> None:
    assert extract_name('prj-dev-billing-ab12', compile_source_pattern(SOURCE)) == 'billing'


def test_extract_name_keeps_inner_hyphens() -> None:
    assert extract_name('prj-dev-data-lake-ab12', compile_source_pattern(SOURCE)) == 'data-lake'


def test_extract_name_mismatch_is_fatal() -> None:
    with pytest.raises(PatternMismatch) as exc:
        extract_name('sandbox-project', compile_source_pattern(SOURCE))
    assert exc.value.project_id == 'sandbox-project'


def test_source_pattern_needs_one_group() -> None:
    with pytest.raises(InvalidPattern):
        compile_source_pattern(r'prj-\w+-.*')
    with pytest.raises(InvalidPattern):
        compile_source_pattern(r'prj-(\w+)-(.*)')
    with pytest.raises(InvalidPattern):
        compile_source_pattern(r'prj-(')


def test_target_pattern_matches_only_same_name() -> None:
    pattern = build_target_pattern(TARGET, 'billing')
    assert pattern.pattern == r'prj-\w+-billing-[a-zA-Z0-9]{4}$'

    candidates = [
        ProjectRef('prj-staging-payments-ef56'),
        ProjectRef('prj-staging-billing-cd34'),
        ProjectRef('prj-staging-billingx-gh78'),
    ]
    assert find_target(candidates, pattern) == ProjectRef('prj-staging-billing-cd34')


@pytest.mark.parametrize('template', ['prj-static-[a-z]{4}$', 'prj-(%s'])
def test_bad_target_template_is_invalid_pattern(template) -> None:
    with pytest.raises(InvalidPattern):
        build_target_pattern(template, 'billing')


def test_find_target_picks_first_in_given_order() -> None:
    pattern = build_target_pattern(TARGET, 'billing')
    a = ProjectRef('prj-staging-billing-aaaa')
    b = ProjectRef('prj-prod-billing-bbbb')
    assert find_target([a, b], pattern) is a
    assert find_target([b, a], pattern) is b


def test_find_target_none_when_absent() -> None:
    pattern = build_target_pattern(TARGET, 'billing')
    assert find_target([ProjectRef('prj-staging-payments-ef56')], pattern) is None


def test_match_projects_yields_every_from_project() -> None:
    from_projects = [ProjectRef('prj-dev-billing-ab12'), ProjectRef('prj-dev-search-zz99')]
    to_projects = [ProjectRef('prj-staging-billing-cd34')]

    pairs = list(match_projects(from_projects, to_projects, SOURCE, TARGET))

    assert pairs == [
        (from_projects[0], to_projects[0]),
        (from_projects[1], None),
    ]


# ── Quota differ ──────────────────────────────────────────────────────────────

def test_identical_snapshots_have_no_discrepancies() -> None:
    quotas = {'CPUS': 24.0, 'DISKS_TOTAL_GB': 4096.0}
    regions = {'us-east1': {'CPUS': 8.0}, 'europe-west1': {'CPUS': 8.0}}
    result = diff_snapshots(snapshot('a', quotas, regions), snapshot('b', quotas, regions))
    assert result.discrepancies == ()
    assert result.notices == ()


def test_project_level_difference() -> None:
    result = diff_snapshots(snapshot('a', {'CPUS': 24}), snapshot('b', {'CPUS': 32}))
    assert result.discrepancies == (
        Discrepancy(from_project_id='a', to_project_id='b', metric='CPUS',
                    from_limit=24, to_limit=32, region=None),
    )


def test_single_changed_metric_among_many() -> None:
    base = {'CPUS': 24.0, 'INSTANCES': 100.0, 'NETWORKS': 5.0}
    changed = dict(base, INSTANCES=250.0)
    result = diff_snapshots(snapshot('a', base), snapshot('b', changed))
    assert len(result.discrepancies) == 1
    d = result.discrepancies[0]
    assert (d.metric, d.from_limit, d.to_limit) == ('INSTANCES', 100.0, 250.0)


def test_unlimited_is_compared_like_any_value() -> None:
    result = diff_snapshots(snapshot('a', {'CPUS': -1}), snapshot('b', {'CPUS': 24}))
    assert [(d.from_limit, d.to_limit) for d in result.discrepancies] == [(-1, 24)]


def test_missing_metric_is_notice_not_discrepancy() -> None:
    result = diff_snapshots(snapshot('a', {'CPUS': 24, 'GPUS': 4}), snapshot('b', {'CPUS': 24}))
    assert result.discrepancies == ()
    assert [n.kind for n in result.notices] == [METRIC_MISSING]
    assert result.notices[0].metric == 'GPUS'
    assert str(result.notices[0]) == '[a]: Metric GPUS does not exist'


def test_extra_metric_on_target_side_is_ignored() -> None:
    result = diff_snapshots(snapshot('a', {'CPUS': 24}), snapshot('b', {'CPUS': 24, 'GPUS': 4}))
    assert result.discrepancies == ()
    assert result.notices == ()


def test_metric_lookup_is_case_sensitive() -> None:
    result = diff_snapshots(snapshot('a', {'CPUS': 24}), snapshot('b', {'cpus': 32}))
    assert result.discrepancies == ()
    assert result.notices[0].kind == METRIC_MISSING


def test_missing_region_is_notice() -> None:
    result = diff_snapshots(
        snapshot('a', {}, {'us-east1': {'DISKS_TOTAL_GB': 500}}),
        snapshot('b', {}, {'europe-west1': {'DISKS_TOTAL_GB': 500}}),
    )
    assert result.discrepancies == ()
    assert len(result.notices) == 1
    assert result.notices[0].kind == REGION_MISSING
    assert result.notices[0].region == 'us-east1'


def test_regions_are_diffed_independently() -> None:
    result = diff_snapshots(
        snapshot('a', {}, {'us-east1': {'CPUS': 8}, 'us-west1': {'CPUS': 8}}),
        snapshot('b', {}, {'us-east1': {'CPUS': 16}, 'us-west1': {'CPUS': 8}}),
    )
    assert [(d.region, d.metric, d.from_limit, d.to_limit) for d in result.discrepancies] == [
        ('us-east1', 'CPUS', 8, 16),
    ]


def test_failed_region_query_compares_project_level_only() -> None:
    result = diff_snapshots(
        snapshot('a', {'CPUS': 24}, None),
        snapshot('b', {'CPUS': 24}, {'us-east1': {'CPUS': 8}}),
    )
    assert result.discrepancies == ()
    assert result.notices == ()


def test_diff_quotas_first_duplicate_wins() -> None:
    items = diff_quotas(
        [QuotaEntry('CPUS', 24)],
        [QuotaEntry('CPUS', 24), QuotaEntry('CPUS', 99)],
        'a', 'b',
    )
    assert items == []


def test_items_keep_from_side_order() -> None:
    result = diff_snapshots(
        snapshot('a', {'CPUS': 24, 'GPUS': 4}, {'us-east1': {'CPUS': 8}, 'us-west1': {'CPUS': 8}}),
        snapshot('b', {'CPUS': 32}, {'us-east1': {'CPUS': 16}}),
    )
    assert [(type(i).__name__, i.region, i.metric) for i in result.items] == [
        ('Discrepancy', None, 'CPUS'),
        ('Notice', None, 'GPUS'),
        ('Discrepancy', 'us-east1', 'CPUS'),
        ('Notice', 'us-west1', None),
    ]


def test_diff_is_idempotent() -> None:
    a = snapshot('a', {'CPUS': 24, 'GPUS': 1}, {'us-east1': {'CPUS': 8}})
    b = snapshot('b', {'CPUS': 32}, {'us-east1': {'CPUS': 10}})
    assert diff_snapshots(a, b) == diff_snapshots(a, b)


def test_discrepancy_describe() -> None:
    d = Discrepancy('a', 'b', 'CPUS', 24, 32, region='us-east1')
    assert d.describe() == '[a/us-east1] [CPUS] (24.000000) limit differs from [b/us-east1] [CPUS] (32.000000)'


# ── Orchestrator ──────────────────────────────────────────────────────────────

def make_cloud(snapshots):
    return FakeCloud(
        projects={
            'labels.env:dev': [ProjectRef('prj-dev-billing-ab12'), ProjectRef('prj-dev-search-zz99')],
            'labels.env:stg': [ProjectRef('prj-stg-payments-ef56'), ProjectRef('prj-stg-billing-cd34')],
        },
        snapshots=snapshots,
    )


def test_compare_environments_end_to_end() -> None:
    cloud = make_cloud({
        'prj-dev-billing-ab12': snapshot('prj-dev-billing-ab12', {'CPUS': 24}, {'us-east1': {'DISKS_TOTAL_GB': 500}}),
        'prj-stg-billing-cd34': snapshot('prj-stg-billing-cd34', {'CPUS': 32}, {}),
    })
    emitted = []

    result = compare_environments(cloud, cloud, 'labels.env:dev', 'labels.env:stg', SOURCE, TARGET,
                                  emit=emitted.append)

    assert result.discrepancies == (
        Discrepancy('prj-dev-billing-ab12', 'prj-stg-billing-cd34', 'CPUS', 24, 32),
    )
    kinds = sorted(n.kind for n in result.notices)
    assert kinds == [NO_MATCH, REGION_MISSING]
    assert set(emitted) == set(result.discrepancies) | set(result.notices)
    assert cloud.fetched == ['prj-dev-billing-ab12', 'prj-stg-billing-cd34']
    assert [(f.project_id, t.project_id if t else None) for f, t in result.pairs] == [
        ('prj-dev-billing-ab12', 'prj-stg-billing-cd34'),
        ('prj-dev-search-zz99', None),
    ]


def test_compare_environments_quota_fetch_failure_is_fatal() -> None:
    cloud = make_cloud({
        'prj-dev-billing-ab12': snapshot('prj-dev-billing-ab12', {'CPUS': 24}),
    })
    with pytest.raises(QuotaFetchError) as exc:
        compare_environments(cloud, cloud, 'labels.env:dev', 'labels.env:stg', SOURCE, TARGET,
                             emit=lambda item: None)
    assert exc.value.project_id == 'prj-stg-billing-cd34'


def test_compare_environments_pattern_mismatch_aborts() -> None:
    cloud = FakeCloud(
        projects={'dev': [ProjectRef('sandbox')], 'stg': [ProjectRef('prj-stg-billing-cd34')]},
        snapshots={},
    )
    with pytest.raises(PatternMismatch):
        compare_environments(cloud, cloud, 'dev', 'stg', SOURCE, TARGET)
    assert cloud.fetched == []


def test_as_dict_report() -> None:
    cloud = make_cloud({
        'prj-dev-billing-ab12': snapshot('prj-dev-billing-ab12', {'CPUS': 24}),
        'prj-stg-billing-cd34': snapshot('prj-stg-billing-cd34', {'CPUS': 32}),
    })
    report = compare_environments(cloud, cloud, 'labels.env:dev', 'labels.env:stg', SOURCE, TARGET).as_dict()
    assert report['discrepancies'][0]['metric'] == 'CPUS'
    assert report['discrepancies'][0]['region'] is None
    assert report['notices'][0]['kind'] == NO_MATCH
    assert report['pairs'][1] == {'from': 'prj-dev-search-zz99', 'to': None}


@pytest.mark.parametrize('template', [r'prj-\w+-billing-[a-z0-9]{4}$', 'prj-(%s'])
def test_compare_environments_bad_target_template_aborts(template) -> None:
    cloud = make_cloud({})
    with pytest.raises(InvalidPattern):
        compare_environments(cloud, cloud, 'labels.env:dev', 'labels.env:stg', SOURCE, template)
    assert cloud.fetched == []


def test_compare_environments_emits_in_discovery_order() -> None:
    cloud = make_cloud({
        'prj-dev-billing-ab12': snapshot('prj-dev-billing-ab12', {'GPUS': 4}, {'us-east1': {'CPUS': 8}}),
        'prj-stg-billing-cd34': snapshot('prj-stg-billing-cd34', {}, {'us-east1': {'CPUS': 16}}),
    })
    emitted = []
    compare_environments(cloud, cloud, 'labels.env:dev', 'labels.env:stg', SOURCE, TARGET, emit=emitted.append)
    assert [type(i).__name__ for i in emitted] == ['Notice', 'Discrepancy', 'Notice']
    assert emitted[0].kind == METRIC_MISSING
    assert emitted[2].kind == NO_MATCH
