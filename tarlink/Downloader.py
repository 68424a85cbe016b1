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
import re

from http import HTTPStatus
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from tarlink.Kernel import getLogger
from tarlink.Progress import Progress
from tarlink.Settings import DOWNLOAD_PATH, DOWNLOAD_TIMEOUT, FLUSH_INTERVAL, SettingsGetter, TRANSFER_CHUNK_SIZE
from tarlink.Utils import StallResilientAdapter, flushPrint

logger = getLogger(__name__)

_CONTENT_RANGE = re.compile(r'^\s*bytes\s+(?:(\d+)-(\d+)|\*)/(\d+|\*)\s*$', re.IGNORECASE)


class DownloadError(Exception):
    """A download attempt failed; whatever was flushed to the output file stays there."""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


class DownloadResult:

    def __init__(self, outputPath, status, offset, received, totalBytes):
        self.outputPath = outputPath
        self.status = status
        self.offset = offset # Where this session started writing
        self.received = received # Bytes written this session
        self.totalBytes = totalBytes # Bytes now present locally

    @property
    def resumed(self):
        return self.status == HTTPStatus.PARTIAL_CONTENT and self.offset > 0

    def __repr__(self):
        return (
            f'DownloadResult(outputPath={self.outputPath!r}, status={self.status}, offset={self.offset}, '
            f'received={self.received}, totalBytes={self.totalBytes})'
        )


def parseContentRange(value):
    """
    Parse a Content-Range header.

    Returns:
        tuple: (start, end, total); start/end are None for "bytes */total" and
               total is None for "bytes a-b/*". None if the value is not a byte range.
    """
    if not value:
        return None

    match = _CONTENT_RANGE.match(value)
    if not match:
        return None

    start, end, total = match.groups()
    return (
        int(start) if start is not None else None,
        int(end) if end is not None else None,
        int(total) if total != '*' else None,
    )


def buildDownloadURL(serverURL, files=None):
    """
    Turn a server base URL into the download URL, adding one file= parameter per name.

    A URL that already carries a path is kept as is.
    """
    parsed = urlparse(serverURL)
    path = parsed.path if parsed.path not in ('', '/') else DOWNLOAD_PATH

    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend(('file', name) for name in files or [])

    return urlunparse(parsed._replace(path=path, query=urlencode(query)))


class ResumeDownloader:
    """
    Downloads an archive, continuing from whatever an earlier run left on disk.

    The length of the output file is the only resume state: no session or
    ticket is exchanged with the server, so a resume works across process
    restarts. Nothing verifies that the remote archive is unchanged between
    attempts.
    """

    def __init__(
        self,
        session=None,
        chunkSize=TRANSFER_CHUNK_SIZE,
        flushInterval=FLUSH_INTERVAL,
        timeout=DOWNLOAD_TIMEOUT,
        useBar=None,
        loggerCallback=flushPrint,
    ):
        self._ownsSession = session is None
        if session is None:
            session = requests.Session()
            adapter = StallResilientAdapter(chunkSize=chunkSize)
            session.mount('http://', adapter)
            session.mount('https://', adapter)

        if useBar is None:
            useBar = SettingsGetter.getInstance().useProgressBar()

        self.session = session
        self.chunkSize = chunkSize
        self.flushInterval = flushInterval
        self.timeout = timeout
        self.useBar = useBar
        self.loggerCallback = loggerCallback

    def getResumeOffset(self, outputPath):
        if not os.path.exists(outputPath):
            return 0

        if not os.path.isfile(outputPath):
            raise DownloadError(f'Output path is not a regular file: {outputPath}')

        return os.path.getsize(outputPath)

    def download(self, url, outputPath, files=None, resume=True):
        """
        Download url into outputPath, resuming from the current file length.

        Args:
            url: Server base URL or full download URL
            outputPath: Local archive path
            files: Optional base names to request (file= parameters)
            resume: False discards any existing output first

        Returns:
            DownloadResult

        Raises:
            DownloadError: On a non-success status or a network failure
        """
        url = buildDownloadURL(url, files)

        if not resume:
            self._truncate(outputPath)

        offset = self.getResumeOffset(outputPath)
        if offset > 0:
            self.loggerCallback(f'Resuming download from byte {offset}')

        response = self._request(url, offset)
        try:
            if offset > 0 and response.status_code == HTTPStatus.PARTIAL_CONTENT:
                contentRange = parseContentRange(response.headers.get('Content-Range'))
                if contentRange is None or contentRange[0] != offset:
                    logger.warning(
                        f'Requested bytes from {offset} but server sent '
                        f'{response.headers.get("Content-Range")!r}; downloading again from scratch'
                    )
                    response.close()
                    self._truncate(outputPath)
                    offset = 0
                    response = self._request(url, offset)

            return self._receive(response, outputPath, offset)
        finally:
            response.close()

    def _request(self, url, offset):
        headers = {}
        if offset > 0:
            headers['Range'] = f'bytes={offset}-'

        logger.debug(f'GET {url} {headers}')
        try:
            return self.session.get(url, headers=headers, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise DownloadError(f'Failed to connect to {url}: {e}') from e

    def _receive(self, response, outputPath, offset):
        status = response.status_code

        if status == HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE and offset > 0:
            contentRange = parseContentRange(response.headers.get('Content-Range'))
            if contentRange is not None and contentRange[2] == offset:
                self.loggerCallback(f'{outputPath} is already complete ({offset} bytes)')
                return DownloadResult(outputPath, status, offset, 0, offset)

        if not response.ok:
            raise DownloadError(f'Server responded with {status} {response.reason}', status, response)

        if status == HTTPStatus.PARTIAL_CONTENT:
            if offset == 0:
                logger.warning('Server sent 206 Partial Content for a request without Range; appending anyway')
            mode = 'ab'
        else:
            if offset > 0:
                logger.warning(f'Server ignored Range (status {status}); rewriting {outputPath} from scratch')
            mode = 'wb'
            offset = 0

        totalLength = self._getTotalLength(response, offset)
        received = self._stream(response, outputPath, mode, offset, totalLength)

        expected = response.headers.get('Content-Length')
        if expected is not None and expected.isdigit() and received < int(expected):
            raise DownloadError(
                f'Transfer ended after {received} of {expected} bytes; run again to resume', status, response
            )

        return DownloadResult(outputPath, status, offset, received, offset + received)

    def _getTotalLength(self, response, offset):
        if response.status_code == HTTPStatus.PARTIAL_CONTENT:
            contentRange = parseContentRange(response.headers.get('Content-Range'))
            if contentRange is not None and contentRange[2] is not None:
                return contentRange[2]

        contentLength = response.headers.get('Content-Length')
        if contentLength is not None and contentLength.isdigit():
            return offset + int(contentLength)

        return 0

    def _stream(self, response, outputPath, mode, offset, totalLength):
        received = 0
        unflushed = 0

        with Progress(totalLength, initial=offset, loggerCallback=self.loggerCallback, useBar=self.useBar) as progress:
            with open(outputPath, mode) as f:
                try:
                    for chunk in response.iter_content(chunk_size=self.chunkSize):
                        if not chunk:
                            continue

                        f.write(chunk)
                        received += len(chunk)
                        unflushed += len(chunk)

                        if unflushed >= self.flushInterval:
                            f.flush()
                            unflushed = 0

                        progress.update(offset + received)
                except requests.RequestException as e:
                    raise DownloadError(
                        f'Transfer interrupted after {received} bytes; run again to resume: {e}',
                        response.status_code, response
                    ) from e

            progress.update(offset + received, forceLog=True)

        return received

    def _truncate(self, outputPath):
        if os.path.isfile(outputPath):
            open(outputPath, 'wb').close()

    def close(self):
        if self._ownsSession:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()
