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

import time

from tqdm import tqdm

from tarlink.Kernel import getLogger
from tarlink.Utils import formatSize

logger = getLogger(__name__)


class BitmathTqdm(tqdm):
    """tqdm bar whose sizes and speed go through formatSize."""

    def __init__(self, *args, sizeFormatter=None, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
            )

        super().__init__(*args, unit='B', unit_scale=False, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d


class Progress:
    """
    Transfer progress, either as a tqdm bar or as periodic log lines.

    `initial` is the number of bytes already present before this session
    (a resume offset); speed is computed only from bytes moved now.
    """

    def __init__(self, totalSize, initial=0, sizeFormatter=None, loggerCallback=print, logInterval=2.0, useBar=False):
        self.totalSize = totalSize or 0
        self.initial = initial
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar

        self.transferred = initial
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = initial

        self.pbar = None
        if self.useBar:
            self.pbar = BitmathTqdm(
                total=self.totalSize or None,
                initial=initial,
                desc='Progress',
                sizeFormatter=self.sizeFormatter,
                leave=True,
                ncols=100,
            )

    def update(self, bytesTransferred, forceLog=False):
        """Update progress with the absolute number of bytes present so far."""
        previousTransferred = self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.pbar is not None:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)
        elif forceLog or (currentTime - self.lastProgressTime) >= self.logInterval:
            self._logProgress(currentTime)

    def _logProgress(self, currentTime):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes
        speedBytesPerSec = bytesDelta / timeDelta if timeDelta > 0 else 0

        if self.totalSize > 0:
            percentage = self.transferred * 100.0 / self.totalSize
            self.loggerCallback(
                f'Progress: {self.sizeFormatter(self.transferred)}/{self.sizeFormatter(self.totalSize)} '
                f'({percentage:.2f}%), {self.sizeFormatter(int(speedBytesPerSec))}/sec'
            )
        else:
            self.loggerCallback(
                f'Progress: {self.sizeFormatter(self.transferred)}, {self.sizeFormatter(int(speedBytesPerSec))}/sec'
            )

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getSessionBytes(self):
        """Bytes moved in this session, excluding the resume offset."""
        return self.transferred - self.initial

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize > 0 else 0

    def finish(self):
        if self.pbar is not None:
            try:
                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finish()
