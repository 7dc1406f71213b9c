#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""This module contains functions that transform Python values into
text representations optimized for human beings.
The resulting strings are not ment to be parsed into values again later. They
are just for optical output purposes."""

import math


def timespan(seconds: float) -> str:
    """Render an age in seconds

    >>> timespan(12)
    '12 s'
    >>> timespan(3725)
    '1 h 2 m'
    >>> timespan(2 * 86400 + 7200)
    '2 d 2 h'
    """
    secs = int(seconds)
    if secs < 60:
        return "%d s" % secs
    mins, secs = divmod(secs, 60)
    if mins < 60:
        return "%d m %d s" % (mins, secs)
    hours, mins = divmod(mins, 60)
    if hours < 24:
        return "%d h %d m" % (hours, mins)
    days, hours = divmod(hours, 24)
    return "%d d %d h" % (days, hours)


def drop_dotzero(v: float, digits: int = 2) -> str:
    """Renders a number as a floating point number and drops useless
    zeroes at the end of the fraction

    >>> drop_dotzero(45.1)
    '45.1'
    >>> drop_dotzero(45.0)
    '45'
    >>> drop_dotzero(45.111, 1)
    '45.1'
    >>> drop_dotzero(45.999, 1)
    '46'
    """
    t = "%.*f" % (digits, v)
    if "." in t:
        return t.rstrip("0").rstrip(".")
    return t


def percent(perc: float) -> str:
    """Renders a given number as percentage string

    >>> percent(83.33333)
    '83.33%'
    >>> percent(25)
    '25.0%'
    >>> percent(100)
    '100%'
    """
    # 0 and 0.0 is a special case
    if perc == 0:
        return "0%"

    if abs(perc) >= 100:
        result = "%d" % perc
    else:
        result = drop_dotzero(perc, 2)

    # add .0 to all integers < 100
    if float(result).is_integer() and float(result) < 100:
        result += ".0"

    return result + "%"


# Render a physical value with a precision of p
# digits. Use m (milli), µ (micro), n (nano)
# p is the number of non-zero digits - not the number of
# decimal places.
# Examples for p = 3:
# a: 0.0002234   b: 137.56
# Result:
# a: 223 µs      b: 138 s
def physical_precision(v: float, precision: int, unit_symbol: str) -> str:
    """
    >>> physical_precision(0.0002234, 3, "s")
    '223 µs'
    >>> physical_precision(-0.5, 3, "s")
    '-500 ms'
    """
    if v < 0:
        return "-" + physical_precision(-v, precision, unit_symbol)

    scale_symbol, places_after_comma, scale_factor = calculate_physical_precision(v, precision)

    scaled_value = float(v) / scale_factor
    return "%.*f %s%s" % (places_after_comma, scaled_value, scale_symbol, unit_symbol)


def calculate_physical_precision(v: float, precision: int) -> tuple[str, int, float]:
    if v == 0:
        return "", precision - 1, 1

    # Splitup in mantissa (digits) an exponent to the power of 10
    _mantissa, exponent = _frexp10(float(v))

    # Choose a power where no artifical zero (due to rounding) needs to be
    # placed left of the decimal point.
    scale_symbols = {
        -5: "f",
        -4: "p",
        -3: "n",
        -2: "µ",
        -1: "m",
        0: "",
        1: "k",
        2: "M",
    }
    scale = 0

    while exponent < 0 and scale > -5:
        scale -= 1
        exponent += 3

    places_before_comma = exponent + 1
    places_after_comma = precision - places_before_comma
    while places_after_comma < 0 and scale < 2:
        scale += 1
        exponent -= 3
        places_before_comma = exponent + 1
        places_after_comma = precision - places_before_comma

    return scale_symbols[scale], max(places_after_comma, 0), 1000.0**scale


def _frexp10(x: float) -> tuple[float, int]:
    exp = int(math.log(x, 10))
    mantissa = x / 10**exp
    if mantissa < 1:
        mantissa *= 10
        exp -= 1
    return mantissa, exp
