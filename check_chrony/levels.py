#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Generic checking of a value against warning and critical levels"""

import enum
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, model_validator

from .state import Result, State

__all__ = ["Direction", "ThresholdRule", "check_levels"]


class Direction(enum.Enum):
    UPPER = "upper"  # alert when the value is at least the level
    LOWER = "lower"  # alert when the value is at most the level


class ThresholdRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    direction: Direction
    warn: float
    crit: float

    @model_validator(mode="after")
    def _levels_are_ordered(self) -> "ThresholdRule":
        if self.direction is Direction.UPPER and self.warn > self.crit:
            raise ValueError(
                f"{self.name}: warning level {self.warn} is above critical level {self.crit}"
            )
        if self.direction is Direction.LOWER and self.warn < self.crit:
            raise ValueError(
                f"{self.name}: warning level {self.warn} is below critical level {self.crit}"
            )
        return self

    def check(self, value: float) -> State:
        if self.direction is Direction.UPPER:
            if value >= self.crit:
                return State.CRIT
            if value >= self.warn:
                return State.WARN
            return State.OK

        if value <= self.crit:
            return State.CRIT
        if value <= self.warn:
            return State.WARN
        return State.OK

    def levels_text(self, render_func: Callable[[float], str]) -> str:
        ty = "at" if self.direction is Direction.UPPER else "at or below"
        return f" (warn/crit {ty} {render_func(self.warn)}/{render_func(self.crit)})"


def _default_render(value: float) -> str:
    return f"{value:.2f}"


def check_levels(
    value: float,
    rule: ThresholdRule,
    *,
    label: str,
    render_func: Callable[[float], str] = _default_render,
) -> Result:
    """Check a value against the rule and describe the outcome

    The levels are only mentioned if they have been reached.
    """
    state = rule.check(value)
    text = f"{label}: {render_func(value)}"
    if state is not State.OK:
        text += rule.levels_text(render_func)
    return Result(state, text)
