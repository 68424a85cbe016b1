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

import argparse
import json
import os
import logging
import logging.config
import platform

from tarlink.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel
from tarlink.Settings import ARCHIVE_FILENAME, DEFAULT_HOST, DEFAULT_SERVER_PORT, SettingsGetter
from tarlink.Utils import flushPrint, getEnv

COMMAND_NAMES = {'serve', 'download'}

logger = getLogger(__name__)


def configureLogging(logLevel):
    """Configure logging from a level name or a logging config JSON file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. TARLINK_LOGGING_LEVEL environment variable
    3. None (no configuration change)
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('TARLINK_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")
            logLevel = 'WARNING'

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"TarLink v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Support: {SettingsGetter.getInstance().getSupportURL()}")


def validatePort(portStr):
    """Validate port number for argparse"""
    try:
        port = int(portStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")

    if not (1 <= port <= 65535):
        raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (1-65535)")
    return port


def validatePositive(valueStr, fieldName):
    """Validate non-negative integer values for argparse"""
    try:
        value = int(valueStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid {fieldName.lower()} value: {valueStr}")

    if value < 0:
        raise argparse.ArgumentTypeError(f"{fieldName} {value} cannot be negative")
    return value


def validateLogLevel(logLevel):
    """Validate log level for argparse"""
    # Config file paths are validated later
    if os.path.exists(logLevel):
        return logLevel

    validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR']
    if logLevel.upper() not in validLevels:
        raise argparse.ArgumentTypeError(
            f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
        )
    return logLevel.upper()


def configureCLIParser():
    """
    Build the parser: global options in a parent parser shared by the
    'serve' and 'download' subcommands.

    Returns:
        tuple: (parser, globalsParent)
    """
    globalsParent = argparse.ArgumentParser(add_help=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    parser = argparse.ArgumentParser(
        prog='tarlink',
        description="Serve files as one resumable tar.gz download, or download one.",
        parents=[globalsParent],
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    serveParser = subparsers.add_parser(
        'serve', help='Serve files as a single archive (default command)', parents=[globalsParent]
    )
    serveParser.add_argument("files", metavar="FILE", nargs='+', help="Files to include in the archive")
    serveParser.add_argument(
        "--port", type=validatePort, default=DEFAULT_SERVER_PORT,
        help=f"Port number for the server (default: {DEFAULT_SERVER_PORT})", metavar="PORT"
    )
    serveParser.add_argument(
        "--host", default=DEFAULT_HOST, help=f"Address to bind (default: {DEFAULT_HOST})", metavar="HOST"
    )
    serveParser.add_argument(
        "--max-downloads",
        type=lambda value: validatePositive(value, "Max downloads"),
        default=0,
        help="Completed downloads before the server shuts down. 0 means unlimited.",
        dest="maxDownloads"
    )
    serveParser.add_argument(
        "--timeout",
        type=lambda value: validatePositive(value, "Timeout"),
        default=0,
        help="Seconds before the server shuts down. 0 means no timeout."
    )

    downloadParser = subparsers.add_parser(
        'download', help='Download (or resume downloading) an archive', parents=[globalsParent]
    )
    downloadParser.add_argument("url", metavar="URL", help="Server URL, e.g. http://192.168.1.5:8080")
    downloadParser.add_argument(
        "--output", "-o", metavar="PATH", default=ARCHIVE_FILENAME,
        help=f"Output file path (default: {ARCHIVE_FILENAME})"
    )
    downloadParser.add_argument(
        "--file", action="append", dest="files", metavar="NAME",
        help="Only request this served file (repeatable; default: all)"
    )
    downloadParser.add_argument(
        "--no-resume", action="store_false", dest="resume",
        help="Discard an existing partial output instead of resuming it"
    )
    downloadParser.add_argument(
        "--no-progress", action="store_false", dest="progress", help="Log progress lines instead of a progress bar"
    )

    return parser, globalsParent


def _countGlobalArguments(argv, globalsParent):
    globalOptions = set()
    globalOptionsWithValues = set()

    for action in globalsParent._actions:
        for opt in action.option_strings:
            globalOptions.add(opt)
            if action.nargs != 0:
                globalOptionsWithValues.add(opt)

    i = 0
    while i < len(argv):
        arg = argv[i]
        optName = arg.split('=', 1)[0]

        if optName not in globalOptions:
            break

        if arg in globalOptionsWithValues and '=' not in arg:
            i += 2
        else:
            i += 1

    return min(i, len(argv))


def preprocessArguments(argv, globalsParent):
    """
    Rewrite shorthand command lines before final parsing.

    - Insert 'download' before a leading http(s) URL and 'serve' before
      anything else that is not a command.
    - For 'serve', a trailing bare number is the port: `a.txt b.txt 8888`.
    """
    argv = list(argv)

    commandIndex = _countGlobalArguments(argv, globalsParent)
    if commandIndex >= len(argv):
        return argv

    firstArg = argv[commandIndex]
    if firstArg not in COMMAND_NAMES and not firstArg.startswith('-'):
        if firstArg.startswith('http://') or firstArg.startswith('https://'):
            argv.insert(commandIndex, 'download')
            logger.debug("Auto-inserted 'download' command before URL")
        else:
            argv.insert(commandIndex, 'serve')
            logger.debug("Auto-inserted 'serve' command before file path")

    hasPort = any(arg.split('=', 1)[0] == '--port' for arg in argv)
    if argv[commandIndex] == 'serve' and not hasPort and len(argv) > commandIndex + 2:
        last = argv[-1]
        previous = argv[-2]
        if last.isdigit() and not previous.startswith('-'):
            argv[-1:] = ['--port', last]

    return argv
