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

import datetime
import threading
import concurrent.futures

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from time import time
from urllib.parse import parse_qs, urlparse

from tarlink.Archive import (
    ArchiveBuilder, ArchiveBuildError, ArchiveError, SourceFileSet, SourceNotFoundError
)
from tarlink.Kernel import PUBLIC_VERSION, getLogger
from tarlink.Progress import Progress
from tarlink.Range import RangeNotSatisfiableError, resolveRange
from tarlink.Settings import (
    ARCHIVE_BUILD_TIMEOUT, ARCHIVE_CONTENT_TYPE, ARCHIVE_FILENAME, BUILD_WORKERS, DEFAULT_HOST, DEFAULT_SERVER_PORT,
    DOWNLOAD_PATH, TRANSFER_CHUNK_SIZE
)
from tarlink.Utils import flushPrint, formatSize

LOG_OUTPUT_DURATION = 1 # Seconds

logger = getLogger(__name__)


class TransferResponse:
    """
    Status, headers and payload for one download exchange.

    For 200/206 the payload is a slice of an ArchiveBlob owned by this
    response; close() releases it.
    """

    def __init__(self, status, headers, blob=None, byteRange=None):
        self.status = status
        self.headers = headers
        self.blob = blob
        self.byteRange = byteRange

    @property
    def contentLength(self) -> int:
        return int(self.headers.get('Content-Length', 0))

    @property
    def totalLength(self):
        return self.blob.size if self.blob is not None else None

    def iterChunks(self, chunkSize: int):
        if self.blob is None or self.contentLength == 0:
            return

        if self.byteRange is not None:
            yield from self.blob.iterChunks(chunkSize, self.byteRange.start, self.byteRange.end)
        else:
            yield from self.blob.iterChunks(chunkSize)

    def read(self) -> bytes:
        return b''.join(self.iterChunks(TRANSFER_CHUNK_SIZE))

    def close(self):
        if self.blob is not None:
            self.blob.close()

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()


class TransferResponder:
    """
    Turns a download request into a TransferResponse.

    Archives are built on a worker pool so request threads only wait for the
    result; each request gets its own ArchiveBlob and nothing is cached.
    """

    def __init__(self, sourceFiles, builder=None, executor=None, buildTimeout=ARCHIVE_BUILD_TIMEOUT):
        if not isinstance(sourceFiles, SourceFileSet):
            sourceFiles = SourceFileSet(sourceFiles)

        self.sourceFiles = sourceFiles
        self.builder = builder or ArchiveBuilder()
        self.buildTimeout = buildTimeout

        self._ownsExecutor = executor is None
        self.executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=BUILD_WORKERS, thread_name_prefix='ArchiveBuilder'
        )

    def baseHeaders(self):
        return {
            'Accept-Ranges': 'bytes',
            'Content-Type': ARCHIVE_CONTENT_TYPE,
            'Content-Disposition': f'attachment; filename="{ARCHIVE_FILENAME}"',
        }

    def buildArchive(self, names=None):
        files = self.sourceFiles.select(names)
        future = self.executor.submit(self.builder.build, files.paths)

        try:
            return future.result(timeout=self.buildTimeout or None)
        except concurrent.futures.TimeoutError:
            # The build keeps running in the pool; release its blob once it lands.
            future.add_done_callback(_closeAbandonedBlob)
            raise ArchiveBuildError(f'Archive build exceeded {self.buildTimeout} seconds')

    def respond(self, rangeHeader=None, names=None) -> TransferResponse:
        headers = self.baseHeaders()

        try:
            blob = self.buildArchive(names)
        except SourceNotFoundError as e:
            logger.warning(f'Rejecting download: {e}')
            return self._errorResponse(HTTPStatus.BAD_REQUEST, headers)
        except ArchiveError as e:
            logger.error(f'Error creating archive: {e}')
            return self._errorResponse(HTTPStatus.INTERNAL_SERVER_ERROR, headers)
        except Exception as e:
            logger.exception(f'Unexpected failure creating archive: {e}')
            return self._errorResponse(HTTPStatus.INTERNAL_SERVER_ERROR, headers)

        totalLength = blob.size

        # A blank Range header carries no range; treat it as absent.
        if rangeHeader is None or not rangeHeader.strip():
            headers['Content-Length'] = str(totalLength)
            return TransferResponse(HTTPStatus.OK, headers, blob)

        try:
            byteRange = resolveRange(rangeHeader, totalLength)
        except RangeNotSatisfiableError as e:
            blob.close()
            logger.info(f'Range check failed: {e}')
            headers['Content-Range'] = e.contentRange
            headers['Content-Length'] = '0'
            return TransferResponse(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE, headers)

        headers['Content-Range'] = byteRange.contentRange
        headers['Content-Length'] = str(byteRange.length)
        return TransferResponse(HTTPStatus.PARTIAL_CONTENT, headers, blob, byteRange)

    def _errorResponse(self, status, headers):
        headers['Content-Length'] = '0'
        return TransferResponse(status, headers)

    def close(self):
        if self._ownsExecutor:
            self.executor.shutdown(wait=False, cancel_futures=True)


def _closeAbandonedBlob(future):
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class DownloadHandler(BaseHTTPRequestHandler):

    # Keep-alive and Range semantics need HTTP/1.1
    protocol_version = 'HTTP/1.1'
    server_version = f'TarLink/{PUBLIC_VERSION}'

    def __init__(self, *args, **kwargs):
        self.headPathMap = {
            DOWNLOAD_PATH: self._handleDownloadHead,
        }

        self.getPathMap = {
            DOWNLOAD_PATH: self._handleDownload,
        }

        super().__init__(*args, **kwargs)

    def _normalizeRequestPath(self):
        parsedURL = urlparse(self.path)
        path = parsedURL.path.rstrip('/') or '/'
        return path, parse_qs(parsedURL.query)

    def _sendNotFound(self):
        self.send_response(HTTPStatus.NOT_FOUND)
        self.send_header('Content-Length', '0')
        self.end_headers()

    def _sendResponseHeaders(self, response):
        self.send_response(response.status)
        for key, value in response.headers.items():
            self.send_header(key, value)
        self.end_headers()

    # HEAD handlers
    def _handleDownloadHead(self, args):
        with self.server.responder.respond(self.headers.get('Range'), args.get('file')) as response:
            self._sendResponseHeaders(response)

    def do_HEAD(self):
        path, args = self._normalizeRequestPath()

        handler = self.headPathMap.get(path)
        if handler:
            handler(args)
        else:
            self._sendNotFound()

    # GET handlers
    def _handleStartDownloadActions(self, response):
        if response.byteRange is not None:
            flushPrint(
                f'[{self.consoleTimestamp()}] <- Responding with 206 Partial Content: '
                f'{response.byteRange.contentRange}'
            )
        else:
            flushPrint(
                f'[{self.consoleTimestamp()}] <- Responding with 200 OK '
                f'(Full content, {formatSize(response.contentLength)})'
            )

    def _handlePostDownloadActions(self, response):
        byteRange = response.byteRange
        # Only a transfer that reached the last byte counts as a finished download
        if byteRange is None or byteRange.end == byteRange.total - 1:
            self.server.doAfterDownload()

    def _handleDownloadExceptionActions(self, exception, written):
        logger.info(f'Client {self.address_string()} disconnected after {written} bytes: {exception!r}')
        flushPrint('\nConnection disconnected, the client can resume later.\n')

    def _handleDownload(self, args):
        response = self.server.responder.respond(self.headers.get('Range'), args.get('file'))

        written = 0
        try:
            self._sendResponseHeaders(response)

            if response.status not in (HTTPStatus.OK, HTTPStatus.PARTIAL_CONTENT):
                return

            self._handleStartDownloadActions(response)

            offset = response.byteRange.start if response.byteRange else 0
            progress = Progress(
                response.totalLength,
                initial=offset,
                loggerCallback=logger.info,
                logInterval=LOG_OUTPUT_DURATION,
            )

            for chunk in response.iterChunks(TRANSFER_CHUNK_SIZE):
                self.wfile.write(chunk)
                written += len(chunk)
                progress.update(offset + written)

            self.wfile.flush()
            progress.update(offset + written, forceLog=True)

            self._handlePostDownloadActions(response)

        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as ce:
            self.close_connection = True
            self._handleDownloadExceptionActions(ce, written)
        except ArchiveError as e:
            # Headers are already out; the only safe thing left is dropping the connection.
            self.close_connection = True
            logger.error(f'Failed while streaming archive: {e}')
        finally:
            response.close()

    def do_GET(self):
        path, args = self._normalizeRequestPath()

        handler = self.getPathMap.get(path)
        if handler:
            handler(args)
        else:
            self._sendNotFound()

    def consoleTimestamp(self):
        # Local time for console lines; the Date header keeps the HTTP-date format
        return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def log_message(self, format, *args):
        logger.info(f'{self.address_string()} - {format % args}')


class Server(ThreadingHTTPServer):

    request_queue_size = 16
    allow_reuse_address = True
    daemon_threads = True
    stop = False # The flag to let shutdown request can close server

    def __init__(
        self, serverAddress, sourceFiles, requestHandlerClass=None, responder=None, maxDownloads=0, timeout=0
    ):
        if not isinstance(sourceFiles, SourceFileSet):
            sourceFiles = SourceFileSet(sourceFiles)

        self.sourceFiles = sourceFiles
        self.responder = responder or TransferResponder(sourceFiles)
        self.maxDownloads = maxDownloads
        self.timeout = timeout

        self.downloadCount = 0
        self.startTime = time()
        self._countLock = threading.Lock()

        if requestHandlerClass is None:
            requestHandlerClass = DownloadHandler

        try:
            super().__init__(serverAddress, requestHandlerClass)
        except OSError:
            self.responder.close()
            raise

    @property
    def port(self):
        return self.server_address[1]

    def serve_forever(self, pollInterval=0.5):
        """Handle requests until shutdown, with timeout checking."""

        def timeoutChecker():
            while not self.stop:
                if (time() - self.startTime) >= self.timeout:
                    flushPrint(f'Timeout ({self.timeout} seconds) reached. Shutting down server.')
                    self.shutdown()
                    break

                self._stopEvent.wait(pollInterval)

        self._stopEvent = threading.Event()
        if self.timeout > 0:
            threading.Thread(target=timeoutChecker, daemon=True).start()

        try:
            super().serve_forever(pollInterval)
        finally:
            self._stopEvent.set()

    def doAfterDownload(self):
        with self._countLock:
            self.downloadCount += 1
            reached = self.maxDownloads > 0 and self.downloadCount >= self.maxDownloads

        if reached and not self.stop:
            flushPrint(f'Maximum downloads ({self.maxDownloads}) reached. Shutting down server.')
            # shutdown() blocks until serve_forever returns, so never call it on a handler thread
            threading.Thread(target=self.shutdown, daemon=True).start()

    def handle_error(self, request, clientAddress):
        logger.exception(f'Error while handling request from {clientAddress}')

    def start(self):
        self.serve_forever()

    def shutdown(self):
        self.stop = True
        super().shutdown()

    def server_close(self):
        super().server_close()
        self.responder.close()


def createServer(sourceFiles, port=DEFAULT_SERVER_PORT, host=DEFAULT_HOST, handlerClass=None, maxDownloads=0, timeout=0):
    # Factory function to create a Server instance with the given handler
    return Server((host, port), sourceFiles, handlerClass, maxDownloads=maxDownloads, timeout=timeout)
