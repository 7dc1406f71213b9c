#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""The rule set the evaluation is done with"""

import enum
from pathlib import Path
from typing import Final

from pydantic import BaseModel, ConfigDict, model_validator

from .levels import Direction, ThresholdRule

__all__ = ["AgeWeighting", "DEFAULT_SOCKET", "Rules"]

DEFAULT_SOCKET: Final = Path("/var/run/chrony/chronyd.sock")


class AgeWeighting(enum.Enum):
    """How a good source exceeding the last rx levels is rated

    TRACKING_CRITICAL: the tracking source is critical as soon as it exceeds
        the warning level, any other good source is at most a warning.
    UNIFORM: every good source gets the state of the levels it exceeds.
    """

    TRACKING_CRITICAL = "tracking-critical"
    UNIFORM = "uniform"

    def __str__(self) -> str:
        return self.value


def stratum_rule(warn: float = 10, crit: float = 12) -> ThresholdRule:
    return ThresholdRule(name="stratum", direction=Direction.UPPER, warn=warn, crit=crit)


def reachability_rule(warn: float = 67.0, crit: float = 34.0) -> ThresholdRule:
    return ThresholdRule(name="reachability", direction=Direction.LOWER, warn=warn, crit=crit)


def sources_rule(warn: float = 2, crit: float = 0) -> ThresholdRule:
    return ThresholdRule(name="sources", direction=Direction.LOWER, warn=warn, crit=crit)


def last_rx_rule(warn: float = 64, crit: float = 128) -> ThresholdRule:
    return ThresholdRule(name="last_rx", direction=Direction.UPPER, warn=warn, crit=crit)


class Rules(BaseModel):
    model_config = ConfigDict(frozen=True)

    stratum: ThresholdRule = stratum_rule()
    reachability: ThresholdRule = reachability_rule()
    sources: ThresholdRule = sources_rule()
    last_rx: ThresholdRule | None = None
    last_rx_weighting: AgeWeighting = AgeWeighting.TRACKING_CRITICAL

    @model_validator(mode="after")
    def _directions_match(self) -> "Rules":
        for rule, expected in (
            (self.stratum, Direction.UPPER),
            (self.reachability, Direction.LOWER),
            (self.sources, Direction.LOWER),
            (self.last_rx, Direction.UPPER),
        ):
            if rule is not None and rule.direction is not expected:
                raise ValueError(f"{rule.name}: levels must be {expected.value} levels")
        return self
