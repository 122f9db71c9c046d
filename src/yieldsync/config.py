"""
YieldSync configuration.

Precedence: YIELDSYNC_<FIELD> environment variables > JSON config file >
defaults from core/economics/constants.py. A .env file in the working
directory is loaded first.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator

from yieldsync.core.economics.constants import (
    ADJUSTMENT_COOLDOWN_SECONDS,
    BLOCK_TIME_SECONDS,
    CHALLENGE_BOND,
    CHALLENGE_CHECK_INTERVAL_SECONDS,
    CHALLENGE_TOLERANCE_BPS,
    CHALLENGE_WINDOW_BLOCKS,
    CHALLENGER_REWARD_SHARE,
    CLUSTER_TOLERANCE_BPS,
    DEFAULT_ADJUSTMENT_THRESHOLD_BPS,
    DEFAULT_STALENESS_THRESHOLD_SECONDS,
    FETCH_BACKOFF_SECONDS,
    FETCH_MAX_RETRIES,
    FETCH_TIMEOUT_SECONDS,
    IL_PREVENTION_FACTOR,
    QUORUM_THRESHOLD_BPS,
    RESPONSE_WINDOW_SECONDS,
    SLASH_BPS,
    TASK_CREATION_INTERVAL_SECONDS,
    TICK_INTERVAL_SECONDS,
    TICK_SHIFT_FACTOR,
    blocks_to_seconds,
    is_valid_adjustment_threshold,
)
from yieldsync.core.errors import ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "YIELDSYNC_"


class YieldSyncConfig(BaseModel):
    # Consensus
    cluster_tolerance_bps: int = CLUSTER_TOLERANCE_BPS
    quorum_threshold_bps: int = QUORUM_THRESHOLD_BPS
    staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS

    # Windows
    response_window_seconds: float = RESPONSE_WINDOW_SECONDS
    challenge_window_blocks: int = CHALLENGE_WINDOW_BLOCKS
    block_time_seconds: float = BLOCK_TIME_SECONDS

    # Challenges and slashing
    challenge_tolerance_bps: int = CHALLENGE_TOLERANCE_BPS
    challenger_reward_share: float = CHALLENGER_REWARD_SHARE
    slash_bps: int = SLASH_BPS
    challenge_bond: float = CHALLENGE_BOND

    # Positions
    adjustment_cooldown_seconds: float = ADJUSTMENT_COOLDOWN_SECONDS
    default_adjustment_threshold_bps: int = DEFAULT_ADJUSTMENT_THRESHOLD_BPS
    tick_shift_factor: int = TICK_SHIFT_FACTOR
    il_prevention_factor: float = IL_PREVENTION_FACTOR

    # External fetches
    fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS
    fetch_max_retries: int = FETCH_MAX_RETRIES
    fetch_backoff_seconds: float = FETCH_BACKOFF_SECONDS
    ground_truth_url: Optional[str] = None

    # Background workers
    tick_interval_seconds: float = TICK_INTERVAL_SECONDS
    auto_create_tasks: bool = False
    task_creation_interval_seconds: float = TASK_CREATION_INTERVAL_SECONDS
    scheduled_assets: Optional[List[str]] = None
    auto_challenge: bool = False
    challenge_check_interval_seconds: float = CHALLENGE_CHECK_INTERVAL_SECONDS
    challenger_id: str = "yieldsync-challenger"

    # Runtime
    database_url: Optional[str] = None
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def challenge_window_seconds(self) -> float:
        return blocks_to_seconds(self.challenge_window_blocks, self.block_time_seconds)

    @field_validator("quorum_threshold_bps")
    @classmethod
    def _check_quorum(cls, v: int) -> int:
        if not 0 < v <= 10_000:
            raise ValueError(f"quorum_threshold_bps must be in (0, 10000], got {v}")
        return v

    @field_validator("challenger_reward_share")
    @classmethod
    def _check_reward_share(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"challenger_reward_share must be in [0, 1], got {v}")
        return v

    @field_validator("scheduled_assets", mode="before")
    @classmethod
    def _split_assets(cls, v):
        # YIELDSYNC_SCHEDULED_ASSETS=stETH,rETH
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return v

    @field_validator("default_adjustment_threshold_bps")
    @classmethod
    def _check_threshold(cls, v: int) -> int:
        ok, reason = is_valid_adjustment_threshold(v)
        if not ok:
            raise ValueError(reason)
        return v

    @field_validator(
        "response_window_seconds", "challenge_window_blocks", "block_time_seconds",
        "adjustment_cooldown_seconds", "staleness_threshold_seconds",
        "cluster_tolerance_bps", "challenge_tolerance_bps", "slash_bps",
        "fetch_timeout_seconds", "fetch_max_retries", "fetch_backoff_seconds",
        "tick_interval_seconds", "task_creation_interval_seconds", "challenge_check_interval_seconds",
    )
    @classmethod
    def _check_non_negative(cls, v):
        if v < 0:
            raise ValueError(f"must be non-negative, got {v}")
        return v


def load_config(path: Optional[Union[str, Path]] = None) -> YieldSyncConfig:
    """Build the configuration from .env, an optional JSON file and the environment."""
    load_dotenv()

    data = {}
    if path is not None:
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {path} must contain a JSON object")

    for name in YieldSyncConfig.model_fields:
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            data[name] = value

    try:
        config = YieldSyncConfig(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid configuration: {e}") from e

    logger.debug(f"Configuration loaded: {config.model_dump()}")
    return config
