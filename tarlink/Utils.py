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
import socket
import ssl
import sys

import bitmath

from urllib3 import PoolManager
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from tarlink.Kernel import getLogger
from tarlink.Settings import SettingsGetter

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)


# flush is required when stdout is a pipe (tests, services).
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        # Fallback for terminals that can't encode some characters
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
        else:
            print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(
        "{value:.%df}{%s}" % (decimal, 'unit_plural' if plural else 'unit')
    )

    if not sizeStr.endswith('Byte') and not sizeStr.endswith('Bytes') and not sizeStr.endswith('Bits'):
        return sizeStr.replace('B', '').upper()
    else:
        return sizeStr.replace('Byte', ' Byte').replace('Bit', ' Byte')


def getLocalIP():
    """
    Best-effort discovery of the LAN address other machines can reach us on.

    A UDP "connect" only selects a route, nothing is sent.

    Raises:
        OSError: If no route is available
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(('10.255.255.255', 1))
        ip = sock.getsockname()[0]
    finally:
        sock.close()

    if not ip or ip.startswith('0.'):
        raise OSError('No usable local address')
    return ip


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else: # only errorPrefix without e?
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)

    supportURL = SettingsGetter.getInstance().getSupportURL()
    flushPrint(f'\nIf you still get the same problem, please report it at {supportURL}.\n')

    if isinstance(e, BaseException):
        logger.error(e, exc_info=e)
    else:
        logger.error(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


# Minimum stall timeout in seconds
DEFAULT_MIN_STALL_TIMEOUT_SECONDS = getEnv('HTTP_DEFAULT_MIN_STALL_TIMEOUT_SECONDS', 120)

# Minimum speed threshold in MBps for stall calculation
DEFAULT_STALL_SPEED_THRESHOLD_MBPS = getEnv('HTTP_DEFAULT_STALL_SPEED_THRESHOLD_MBPS', 1.0)

# Python 3.12 + OpenSSL 3.x workaround control
ENABLE_PY312_WORKAROUND = getEnv('HTTP_ENABLE_PY312_WORKAROUND', True)


class StallResilientAdapter(HTTPAdapter):
    """
    HTTP adapter that detects stalled downloads through TCP socket options.

    - TCP keepalive for early dead connection detection
    - TCP_USER_TIMEOUT on Linux for unacknowledged data
    - Python 3.12 + OpenSSL 3.x workarounds (TLS 1.2, limited retries)

    Resume happens at the application layer (the next run continues from the
    local file size), so urllib3 retries are kept to a minimum.
    """

    DEFAULT_SOCKET_OPTIONS = HTTPConnection.default_socket_options

    @classmethod
    def calculateStallTimeoutMs(cls, chunkSize):
        """
        Stall timeout = max(minimum, chunkSize / speedThreshold), in milliseconds.
        """
        speedThresholdBps = DEFAULT_STALL_SPEED_THRESHOLD_MBPS * ONE_MB
        calculatedTimeSeconds = chunkSize / speedThresholdBps
        stallTimeoutSeconds = max(DEFAULT_MIN_STALL_TIMEOUT_SECONDS, calculatedTimeSeconds)
        return int(stallTimeoutSeconds * 1000)

    def __init__(self, stallTimeoutMs: int = None, chunkSize: int = None, *args, **kwargs):
        settingsGetter = SettingsGetter.getInstance()

        if stallTimeoutMs is None and chunkSize is not None:
            self.stallTimeoutMs = self.calculateStallTimeoutMs(chunkSize)
        elif stallTimeoutMs is not None:
            self.stallTimeoutMs = stallTimeoutMs
        else:
            self.stallTimeoutMs = DEFAULT_MIN_STALL_TIMEOUT_SECONDS * 1000

        self.isLinux = settingsGetter.isLinux()

        if sys.version_info >= (3, 12) and ENABLE_PY312_WORKAROUND:
            # Limited connection retries for SSLEOFError issues on Python 3.12 + OpenSSL 3.x.
            # Reads are never retried: a retried GET would restart the body mid-write.
            retryConfig = Retry(
                total=1,
                connect=1,
                read=0,
                status=0,
                backoff_factor=0.5,
                allowed_methods={'GET', 'HEAD'},
                raise_on_status=False
            )
        else:
            retryConfig = Retry(total=0)

        kwargs['max_retries'] = retryConfig

        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        """Initialize pool manager with custom socket options and SSL context."""
        socketOptions = list(self.DEFAULT_SOCKET_OPTIONS)

        socketOptions.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

        if hasattr(socket, "TCP_KEEPIDLE"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 30))
        if hasattr(socket, "TCP_KEEPINTVL"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10))
        if hasattr(socket, "TCP_KEEPCNT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 3))

        if self.isLinux and hasattr(socket, "TCP_USER_TIMEOUT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_USER_TIMEOUT, self.stallTimeoutMs))

        kwargs["socket_options"] = socketOptions

        if sys.version_info >= (3, 12) and ENABLE_PY312_WORKAROUND:
            sslContext = ssl.create_default_context()
            sslContext.minimum_version = ssl.TLSVersion.TLSv1_2
            sslContext.maximum_version = ssl.TLSVersion.TLSv1_2
            kwargs["ssl_context"] = sslContext

        self.poolmanager = PoolManager(num_pools=connections, maxsize=maxsize, block=block, **kwargs)
