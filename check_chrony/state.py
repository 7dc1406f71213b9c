#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Monitoring states and how they are combined"""

import enum
import functools
from typing import NamedTuple

__all__ = ["Result", "State", "combine", "state_markers"]


class State(enum.IntEnum):
    """States of a check result

    OK, WARN and CRIT are graded and ordered. UNKNOWN is the outcome of a check
    that could not evaluate anything at all and is never combined with them.
    """

    OK = 0
    WARN = 1
    CRIT = 2
    UNKNOWN = 3

    @property
    def long_name(self) -> str:
        return _LONG_NAMES[self]

    @property
    def marker(self) -> str:
        return state_markers[self]

    @classmethod
    def worst(cls, *states: "State") -> "State":
        """Returns the worst of the given graded states

        >>> State.worst(State.OK, State.CRIT, State.WARN)
        <State.CRIT: 2>
        >>> State.worst()
        <State.OK: 0>
        """
        return functools.reduce(combine, states, cls.OK)


_LONG_NAMES = {
    State.OK: "OK",
    State.WARN: "WARNING",
    State.CRIT: "CRITICAL",
    State.UNKNOWN: "UNKNOWN",
}

state_markers = {
    State.OK: "",
    State.WARN: "(!)",
    State.CRIT: "(!!)",
    State.UNKNOWN: "(?)",
}


def combine(a: State, b: State) -> State:
    """The worse of two graded states

    >>> combine(State.WARN, State.OK)
    <State.WARN: 1>
    """
    if State.UNKNOWN in (a, b):
        raise ValueError("UNKNOWN can not be combined with graded states")
    return State(max(a, b))


class Result(NamedTuple):
    """One finding of the evaluation"""

    state: State
    text: str

    def __str__(self) -> str:
        return f"{self.text}{self.state.marker}"
