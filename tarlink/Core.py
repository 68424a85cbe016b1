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
import platform
import signal
import sys

import certifi

from tarlink.Archive import SourceFileSet, SourceNotFoundError
from tarlink.CLI import configureCLIParser, configureLogging, preprocessArguments, showVersion
from tarlink.Downloader import DownloadError, ResumeDownloader
from tarlink.Kernel import getLogger
from tarlink.Server import createServer
from tarlink.Settings import DOWNLOAD_PATH, SettingsGetter
from tarlink.Utils import flushPrint, formatSize, getLocalIP, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """A first Ctrl+C stops cleanly, a second one exits immediately."""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    if platform.system().lower() != 'windows':
        os.environ.setdefault("SSL_CERT_FILE", certifi.where())

    return SettingsGetter(platform=platform.system())


def getDisplayHost(host):
    if host not in ('', '0.0.0.0', '::'):
        return host

    try:
        return getLocalIP()
    except OSError as e:
        flushPrint(f'Warning: Could not determine local IP. Using 127.0.0.1. Error: {e}')
        return '127.0.0.1'


def processServe(args):
    """
    Serve the given files until shutdown.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    try:
        sourceFiles = SourceFileSet.build(args.files)
    except SourceNotFoundError as e:
        flushPrint(f'Error: {e}')
        return 1

    try:
        server = createServer(
            sourceFiles, port=args.port, host=args.host, maxDownloads=args.maxDownloads, timeout=args.timeout
        )
    except OSError as e:
        flushPrint(f'Error binding to address {args.host}:{args.port} -- Is the port already in use?')
        flushPrint(f'Details: {e}')
        logger.debug(f'Bind failure: {e!r}')
        return 1

    baseURL = f'http://{getDisplayHost(args.host)}:{server.port}'

    flushPrint('--- File Archive Server Started ---')
    flushPrint(f'Files being served: {list(sourceFiles.paths)}')
    flushPrint(f'Archive entries: {", ".join(sourceFiles.names)}')
    flushPrint(f'Server running on: {baseURL}')
    flushPrint('-' * 58)
    flushPrint(f' DIRECT DOWNLOAD LINK (Port {server.port}):')
    flushPrint(f'{baseURL}{DOWNLOAD_PATH}')
    flushPrint('-' * 58)
    flushPrint('Press Ctrl+C to stop the server.\n')

    try:
        server.start()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
    finally:
        server.server_close()

    return 0


def processDownload(args):
    """
    Download or resume the archive at args.url into args.output.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    settingsGetter = SettingsGetter.getInstance()
    useBar = args.progress and settingsGetter.useProgressBar()

    with ResumeDownloader(useBar=useBar) as downloader:
        try:
            result = downloader.download(args.url, args.output, files=args.files, resume=args.resume)
        except DownloadError as e:
            sendException(
                logger, e, action='Run the same command again to resume the download.', errorPrefix='Download failed'
            )
            return 1

    logger.debug(f'Download finished: {result!r}')
    flushPrint(
        f'Downloaded: {result.outputPath} ({formatSize(result.totalBytes)}, '
        f'{result.received} bytes this session)'
    )
    return 0


def runCLIMain(argv=None):
    """Parse arguments and dispatch to serve or download"""
    parser, globalsParent = configureCLIParser()

    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        parser.print_usage()
        flushPrint('Error: You must specify at least one file path (or a URL to download from).')
        return 1

    # Phase 1: global options only
    globalArgs, rest = globalsParent.parse_known_args(argv)
    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    if not rest:
        parser.print_usage()
        return 1

    # Phase 2: shorthand rewriting, then the real parse
    args = parser.parse_args(preprocessArguments(argv, globalsParent))

    if args.command == 'download':
        return processDownload(args)

    return processServe(args)


def main():
    setupSettings()
    setupGracefulShutdown()

    try:
        return runCLIMain()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0
    except Exception as e:
        sendException(logger, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
