"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables and .env files (local dev)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

from scripts.idn_management.secrets import resolve_secret

DEFAULT_WORKFLOW_NAME = "IdentityNow Management - Email sender"


class TotalCountPolicy(str, Enum):
    """Which declared total a paginated scan trusts for termination."""

    FIRST_PAGE = "first_page"
    EVERY_PAGE = "every_page"


@dataclass(frozen=True)
class PlatformConfig:
    base_url: str
    client_id: str
    client_secret: str
    token_url: str = ""

    @property
    def resolved_token_url(self) -> str:
        if self.token_url:
            return self.token_url
        parts = urlsplit(self.base_url)
        return f"{parts.scheme}://{parts.netloc}/oauth/token"


@dataclass(frozen=True)
class PrivilegedConfig:
    login_url: str
    username: str
    password: str
    api_url: str
    token_field: str = "accessToken"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 10
    # 429 is always retried, these are in addition to it
    retry_status_codes: frozenset[int] = frozenset({500, 502, 503, 504})
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class PaginationConfig:
    batch_size: int = 100
    page_delay_seconds: float = 0.5
    total_count_policy: TotalCountPolicy = TotalCountPolicy.FIRST_PAGE


@dataclass(frozen=True)
class FeatureConfig:
    enable_levels: bool = True
    enable_workgroups: bool = True
    enable_lcs: bool = True
    enable_reports: bool = False
    all_identities: bool = False
    disable_removes_entitlements: bool = False
    # Empty means no lifecycle-state gate on stripping
    disable_removal_states: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ConnectorConfig:
    platform: PlatformConfig
    privileged: Optional[PrivilegedConfig] = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    settle_delay_seconds: float = 5.0
    report_workflow_name: str = DEFAULT_WORKFLOW_NAME


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [s.strip() for s in raw.split(",") if s.strip()]


def _required(name: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise ValueError(f"{name} environment variable is required")
    return value


def load_config() -> ConnectorConfig:
    """Load configuration from environment variables.

    The privileged surface is only configured when its login URL, username
    and password are all present. Secret values may be cloud secret
    references.
    """
    load_dotenv()

    base_url = _required("IDN_BASE_URL").rstrip("/")
    platform = PlatformConfig(
        base_url=base_url,
        client_id=_required("IDN_CLIENT_ID"),
        client_secret=resolve_secret(_required("IDN_CLIENT_SECRET")),
        token_url=os.environ.get("IDN_TOKEN_URL", ""),
    )

    privileged = None
    login_url = os.environ.get("IDN_PRIVILEGED_LOGIN_URL")
    username = os.environ.get("IDN_PRIVILEGED_USERNAME")
    password_raw = os.environ.get("IDN_PRIVILEGED_PASSWORD")
    if login_url and username and password_raw:
        privileged = PrivilegedConfig(
            login_url=login_url,
            username=username,
            password=resolve_secret(password_raw),
            api_url=os.environ.get("IDN_PRIVILEGED_API_URL", base_url).rstrip("/"),
            token_field=os.environ.get("IDN_PRIVILEGED_TOKEN_FIELD", "accessToken"),
        )

    status_codes = _env_list("IDN_RETRY_STATUS_CODES")
    retry = RetryConfig(
        max_retries=int(os.environ.get("IDN_MAX_RETRIES", "10")),
        retry_status_codes=(
            frozenset(int(s) for s in status_codes)
            if status_codes
            else RetryConfig.retry_status_codes
        ),
        backoff_base_seconds=float(os.environ.get("IDN_BACKOFF_BASE_SECONDS", "1")),
        backoff_max_seconds=float(os.environ.get("IDN_BACKOFF_MAX_SECONDS", "60")),
        request_timeout_seconds=float(os.environ.get("IDN_REQUEST_TIMEOUT_SECONDS", "30")),
    )

    pagination = PaginationConfig(
        batch_size=int(os.environ.get("IDN_BATCH_SIZE", "100")),
        page_delay_seconds=float(os.environ.get("IDN_PAGE_DELAY_SECONDS", "0.5")),
        total_count_policy=TotalCountPolicy(
            os.environ.get("IDN_TOTAL_COUNT_POLICY", TotalCountPolicy.FIRST_PAGE.value).lower()
        ),
    )

    features = FeatureConfig(
        enable_levels=_env_bool("IDN_ENABLE_LEVELS", True),
        enable_workgroups=_env_bool("IDN_ENABLE_WORKGROUPS", True),
        enable_lcs=_env_bool("IDN_ENABLE_LCS", True),
        enable_reports=_env_bool("IDN_ENABLE_REPORTS", False),
        all_identities=_env_bool("IDN_ALL_IDENTITIES", False),
        disable_removes_entitlements=_env_bool("IDN_DISABLE_REMOVES_ENTITLEMENTS", False),
        disable_removal_states=frozenset(_env_list("IDN_DISABLE_REMOVAL_STATES")),
    )

    return ConnectorConfig(
        platform=platform,
        privileged=privileged,
        retry=retry,
        pagination=pagination,
        features=features,
        settle_delay_seconds=float(os.environ.get("IDN_SETTLE_DELAY_SECONDS", "5")),
        report_workflow_name=os.environ.get("IDN_REPORT_WORKFLOW_NAME", DEFAULT_WORKFLOW_NAME),
    )
