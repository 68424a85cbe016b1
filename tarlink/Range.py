#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# TarLink - Resumable archive downloads over HTTP
# Copyright (C) 2025 TarLink contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import re

from dataclasses import dataclass
from typing import Optional, Tuple

from tarlink.Kernel import getLogger

logger = getLogger(__name__)

_RANGE_HEADER = re.compile(r'^\s*bytes\s*=(.*)$', re.IGNORECASE)
_RANGE_SPEC = re.compile(r'^([0-9]*)\s*-\s*([0-9]*)$')


class RangeNotSatisfiableError(ValueError):
    """The requested range cannot be served from a resource of totalLength bytes (HTTP 416)."""

    def __init__(self, message, totalLength):
        super().__init__(message)
        self.totalLength = totalLength

    @property
    def contentRange(self):
        return f'bytes */{self.totalLength}'


@dataclass(frozen=True)
class ByteRange:
    """Validated inclusive range, 0 <= start <= end < total."""
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def contentRange(self) -> str:
        return f'bytes {self.start}-{self.end}/{self.total}'

    @property
    def isFull(self) -> bool:
        return self.start == 0 and self.end == self.total - 1


def parseByteRange(rangeHeader: str) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse the first range of a Range header value.

    Returns (first, last) where either may be None:
    (10, 20) for bytes=10-20, (10, None) for bytes=10-, (None, 5) for bytes=-5.

    Raises:
        ValueError: If the value is not a byte range
    """
    if rangeHeader is None:
        raise ValueError('Missing byte range')

    match = _RANGE_HEADER.match(rangeHeader)
    if not match:
        raise ValueError(f'Invalid byte range {rangeHeader!r}')

    # Only the first range of a multi-range request is honoured
    firstSpec = match.group(1).split(',')[0].strip()

    spec = _RANGE_SPEC.match(firstSpec)
    if not spec:
        raise ValueError(f'Invalid byte range {rangeHeader!r}')

    first, last = [int(x) if x else None for x in spec.groups()]
    if first is None and last is None:
        raise ValueError(f'Invalid byte range {rangeHeader!r}')

    return first, last


def resolveRange(rangeHeader: str, totalLength: int) -> ByteRange:
    """
    Resolve a Range header value against a resource of totalLength bytes.

    An out-of-bounds end is rejected rather than clamped, so a client never
    silently receives less than it asked for. A suffix range longer than the
    resource selects the whole resource.

    Raises:
        RangeNotSatisfiableError: If the value is malformed or outside the resource
    """
    try:
        first, last = parseByteRange(rangeHeader)
    except ValueError as e:
        raise RangeNotSatisfiableError(str(e), totalLength) from e

    if first is None:
        if last == 0:
            raise RangeNotSatisfiableError(f'Empty suffix range {rangeHeader!r}', totalLength)
        start = max(totalLength - last, 0)
        end = totalLength - 1
    else:
        start = first
        end = last if last is not None else totalLength - 1

    if start >= totalLength:
        raise RangeNotSatisfiableError(f'Range start {start} beyond {totalLength} bytes', totalLength)

    if end >= totalLength:
        raise RangeNotSatisfiableError(f'Range end {end} beyond {totalLength} bytes', totalLength)

    if start > end:
        raise RangeNotSatisfiableError(f'Range start {start} after end {end}', totalLength)

    return ByteRange(start, end, totalLength)
