"""gcp_quotas - Google Cloud access for the quota comparer

Resource Manager for listing projects, Compute Engine for project and
region quotas. Every API call goes through call_with_retry.
"""

import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path

import google.auth
import google_auth_httplib2
import httplib2
from google.auth.exceptions import DefaultCredentialsError, GoogleAuthError
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from quota_diff import (
    DirectoryError,
    ProjectQuotaSnapshot,
    ProjectRef,
    QuotaCompareError,
    QuotaEntry,
)

logger = logging.getLogger(__name__)

SCOPES = [
    'https://www.googleapis.com/auth/compute.readonly',
    'https://www.googleapis.com/auth/cloudplatformprojects.readonly',
]

# Failures of a single API call once retries are exhausted: HTTP status,
# transport (DNS, timeouts, resets) and credential refresh.
API_ERRORS = (HttpError, httplib2.HttpLib2Error, OSError, GoogleAuthError)

# ══════════════════════════════════════════════════════════════════════════════
# RETRY
# ══════════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    jitter_base: float = 1.0
    max_backoff: float = 5.0
    statuses: tuple = (503,)


def backoff_delay(policy: RetryPolicy, attempt: int, rng=random) -> float:
    """Full-jitter exponential delay before retry number `attempt` (0-based)."""
    ceiling = min(policy.max_backoff, policy.jitter_base * (2 ** attempt))
    return rng.uniform(0, ceiling)


def call_with_retry(label, fn, policy: RetryPolicy = RetryPolicy(), sleep=time.sleep):
    attempt = 0
    while True:
        try:
            return fn()
        except HttpError as e:
            status = getattr(e.resp, 'status', None)
            if status not in policy.statuses or attempt >= policy.max_retries:
                raise
            delay = backoff_delay(policy, attempt)
            attempt += 1
            logger.warning("HTTP %s during %s. Waiting %.2fs (Retry %d/%d)...",
                           status, label, delay, attempt, policy.max_retries)
            sleep(delay)

# ══════════════════════════════════════════════════════════════════════════════
# GOOGLE AUTH & API
# ══════════════════════════════════════════════════════════════════════════════
def get_credentials(token_path=None, client_secrets_path=None):
    """Authorized-user token, then installed-app flow, then application default credentials."""
    token_path = Path(token_path) if token_path else None
    if token_path and token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
            if creds.valid or creds.refresh_token:
                return creds
        except ValueError:
            logger.warning("Token %s invalid, re-authenticating...", token_path)

    if client_secrets_path:
        secrets = Path(client_secrets_path)
        if not secrets.exists():
            raise QuotaCompareError(f"Client secrets not found: {secrets}")
        flow = InstalledAppFlow.from_client_secrets_file(str(secrets), SCOPES)
        creds = flow.run_local_server(port=0)
        if token_path:
            token_path.write_text(creds.to_json(), encoding='utf-8')
        return creds

    try:
        creds, _ = google.auth.default(scopes=SCOPES)
    except DefaultCredentialsError as e:
        raise QuotaCompareError(f"Error creating Google credentials: {e}") from e
    return creds


def build_service(name, version, credentials, timeout=10):
    http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build(name, version, http=http, cache_discovery=False)


def parse_quota_entries(items) -> tuple:
    return tuple(
        QuotaEntry(metric=q['metric'], limit=float(q.get('limit', 0)))
        for q in items or ()
    )


def parse_region_quotas(items) -> dict:
    return {r['name']: parse_quota_entries(r.get('quotas')) for r in items or ()}


class GcpClient:
    """Project directory and quota source backed by the Google APIs."""

    def __init__(self, credentials, timeout=10, retry: RetryPolicy = RetryPolicy(), sleep=time.sleep):
        self.credentials = credentials
        self.timeout = timeout
        self.retry = retry
        self.sleep = sleep
        self._resourcemanager = None
        self._compute = None

    @property
    def resourcemanager(self):
        if self._resourcemanager is None:
            self._resourcemanager = build_service('cloudresourcemanager', 'v1', self.credentials, self.timeout)
        return self._resourcemanager

    @property
    def compute(self):
        if self._compute is None:
            self._compute = build_service('compute', 'v1', self.credentials, self.timeout)
        return self._compute

    def _call(self, label, fn):
        return call_with_retry(label, fn, self.retry, sleep=self.sleep)

    def list_projects(self, filter_expression):
        # only active projects are worth querying
        flt = ' '.join(x for x in ('lifecycleState:ACTIVE', filter_expression) if x)
        logger.info("Project filter: %s", flt)

        projects = []
        token = None
        try:
            while True:
                resp = self._call(
                    f"list projects {flt!r}",
                    lambda: self.resourcemanager.projects().list(filter=flt, pageToken=token).execute())
                for p in resp.get('projects', []):
                    projects.append(ProjectRef(project_id=p['projectId'], display_name=p.get('name', '')))
                token = resp.get('nextPageToken')
                if not token:
                    break
        except API_ERRORS as e:
            raise DirectoryError(f"Listing projects with filter {flt!r} failed: {e}") from e
        return projects

    def get_project_quotas(self, project_id) -> ProjectQuotaSnapshot | None:
        try:
            project = self._call(
                f"get project {project_id}",
                lambda: self.compute.projects().get(project=project_id).execute())
        except API_ERRORS as e:
            logger.error("Failure when querying project quotas for %s: %s", project_id, e)
            return None

        try:
            regions = self._list_regions(project_id)
        except API_ERRORS as e:
            logger.warning("Failure when querying region quotas for %s: %s", project_id, e)
            regions = None

        return ProjectQuotaSnapshot(
            project=ProjectRef(project_id=project_id, display_name=project.get('name', '')),
            project_quotas=parse_quota_entries(project.get('quotas')),
            region_quotas=parse_region_quotas(regions) if regions is not None else {},
        )

    def _list_regions(self, project_id):
        items = []
        token = None
        while True:
            resp = self._call(
                f"list regions {project_id}",
                lambda: self.compute.regions().list(project=project_id, pageToken=token).execute())
            items.extend(resp.get('items', []))
            token = resp.get('nextPageToken')
            if not token:
                break
        return items
