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

import os
import sys

from tarlink.Kernel import Singleton, getLogger

DEFAULT_SERVER_PORT = int(os.getenv('DEFAULT_SERVER_PORT', 8080))
DEFAULT_HOST = os.getenv('DEFAULT_HOST', '0.0.0.0')

DOWNLOAD_PATH = '/download'
ARCHIVE_FILENAME = os.getenv('ARCHIVE_FILENAME', 'archive.tar.gz')
ARCHIVE_CONTENT_TYPE = os.getenv('ARCHIVE_CONTENT_TYPE', 'application/x-tar')

# Transfer chunk size (256 KiB) - used for both server streaming and client writes
TRANSFER_CHUNK_SIZE = int(os.getenv('TRANSFER_CHUNK_SIZE', 256 * 1024))

# Archives larger than this are spooled to an anonymous per-request temp file
ARCHIVE_SPOOL_SIZE = int(os.getenv('ARCHIVE_SPOOL_SIZE', 64 * 1024 * 1024))

# Seconds a request waits for its archive; 0 means no bound
ARCHIVE_BUILD_TIMEOUT = float(os.getenv('ARCHIVE_BUILD_TIMEOUT', 0))

BUILD_WORKERS = int(os.getenv('BUILD_WORKERS', 4))

COMPRESS_LEVEL = int(os.getenv('COMPRESS_LEVEL', 6))

# Client flushes the output file at least every FLUSH_INTERVAL bytes
FLUSH_INTERVAL = int(os.getenv('FLUSH_INTERVAL', 1024 * 1024))

DOWNLOAD_TIMEOUT = float(os.getenv('DOWNLOAD_TIMEOUT', 30))

SUPPORT_URL = 'https://github.com/tarlink/tarlink/issues'

logger = getLogger(__name__)


# Singleton
class SettingsGetter(Singleton):

    def initialize(self, platform=None, useProgressBar=None):
        """Initialize the SettingsGetter with runtime platform information."""
        self._platform = platform
        if useProgressBar is None:
            useProgressBar = sys.stdout.isatty() if hasattr(sys.stdout, 'isatty') else False
        self._useProgressBar = useProgressBar

    @property
    def platform(self):
        return self._platform

    def isLinux(self):
        return self._platform == "Linux"

    def useProgressBar(self):
        """Whether transfers should draw a tqdm bar instead of periodic log lines."""
        return self._useProgressBar

    def getSupportURL(self):
        return SUPPORT_URL
