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
import logging
import threading

# Error reporting is disabled unless TARLINK_SENTRY_DSN is set explicitly.
import sentry_sdk

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter(LOG_FORMAT)

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('TARLINK_LOGGING_LEVEL'):
    _envLevel = LOG_LEVEL_MAPPING.get(os.getenv('TARLINK_LOGGING_LEVEL').upper())
    if _envLevel is not None:
        configureGlobalLogLevel(_envLevel)


def _initSentry():
    """Initialise Sentry once, only when a DSN is configured. Returns True if this call initialised it."""
    sentryDsn = os.getenv('TARLINK_SENTRY_DSN')
    if not sentryDsn or sentry_sdk.get_client().is_active():
        return False

    # Suppress "sentry is attempting to send pending events..." on exit
    sentryAtexit.default_callback = lambda pending, timeout: None

    sentry_sdk.init(
        dsn=sentryDsn,
        release=PUBLIC_VERSION,
        default_integrations=False,
        integrations=[
            LoggingIntegration(),
            sentryAtexit.AtexitIntegration(),
        ],
    )
    return True


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration.

    Sentry itself is only initialised when TARLINK_SENTRY_DSN is present; without it the
    attached SentryHandler is inert and records just go to the regular logging handlers.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryInitialized = _initSentry()

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            syslog = SentryHandler()
            syslog.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(syslog)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            adapter.debug('Sentry initialized')

        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() for custom initialization.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        # initialize() runs once for the lifetime of the singleton
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]

    @classmethod
    def reset(cls):
        """Drop the cached instance (used by tests)."""
        with cls._lock:
            cls._instances.pop(cls, None)
