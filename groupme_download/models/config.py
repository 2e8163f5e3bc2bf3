"""Configuration models for groupme-download.

This module defines the persisted user configuration (API token, preferred
output directory), the tuning knobs for rate limiting and retries, and the
validated per-run archive configuration handed to the archive pipeline.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from groupme_download.utils.atomic import atomic_write_text


class CrawlMode(str, Enum):
    """Order in which a group's history is crawled."""

    oldest_first = "oldest-first"
    newest_first = "newest-first"


class UserConfig(BaseModel):
    """User configuration which can be persisted to disk."""

    api_token: Optional[str] = Field(default=None, description="GroupMe API token (secret)")
    output_dir: Optional[str] = Field(default=None, description="Preferred base archive directory")


class RateLimitConfig(BaseModel):
    """Token bucket pacing for outbound GroupMe requests."""

    rpm: float = Field(default=60.0, gt=0, description="Target requests per minute")
    cap: float = Field(default=120.0, gt=0, description="Max requests per minute reachable during recovery")
    burst: int = Field(default=10, gt=0, description="Token bucket capacity")
    min_rpm: float = Field(default=6.0, gt=0, description="Floor for the target rpm after penalties")


class RetryConfig(BaseModel):
    """Exponential backoff applied to transient fetch and download failures."""

    base_delay: float = Field(default=0.5, ge=0, description="Delay before the first retry, in seconds")
    factor: float = Field(default=2.0, ge=1, description="Multiplier applied to the delay after each retry")
    max_attempts: int = Field(default=5, gt=0, description="Total attempts, including the first one")
    max_delay: float = Field(default=30.0, gt=0, description="Upper bound for a single backoff delay")


class ArchiveConfig(BaseModel):
    """Validated configuration for one archive run."""

    group_ids: List[str] = Field(..., min_length=1, description="GroupMe group identifiers to archive")
    output_dir: Path = Field(..., description="Root directory of the archive")
    concurrency: int = Field(default=4, gt=0, description="Parallel attachment downloads")
    mode: CrawlMode = Field(default=CrawlMode.oldest_first, description="Crawl ordering")
    limit: Optional[int] = Field(default=None, gt=0, description="Most recent N messages (newest-first only)")
    page_size: int = Field(default=100, gt=0, le=100, description="Messages requested per page")

    @field_validator("group_ids")
    @classmethod
    def _strip_group_ids(cls, value: List[str]) -> List[str]:
        cleaned = [v.strip() for v in value]
        if any(not v for v in cleaned):
            raise ValueError("group identifiers must not be empty")
        # Keep the first occurrence, preserve order
        return list(dict.fromkeys(cleaned))

    @model_validator(mode="after")
    def _check_limit(self) -> "ArchiveConfig":
        if self.limit is not None and self.mode is not CrawlMode.newest_first:
            raise ValueError("limit is only supported with the newest-first mode")
        return self


class AppConfig(BaseModel):
    """Main configuration for groupme-download."""

    user: UserConfig = Field(default_factory=UserConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ConfigLoader:
    """Utility class for loading and saving configuration YAML files."""

    @staticmethod
    def load(path: str) -> AppConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file.

        Returns:
            AppConfig: Loaded configuration object, defaults if the file is missing.
        """
        p = Path(path)
        if not p.exists():
            return AppConfig()

        with open(p, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f) or {}

        return AppConfig(**raw_data)

    @staticmethod
    def save(path: str, config: AppConfig) -> None:
        """Persist the configuration, readable by the owner only (it holds the API token)."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump(config.model_dump(mode="json", exclude_none=True), sort_keys=False)
        atomic_write_text(p, text, mode=0o600)
