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
import struct
import threading
import time
import unittest

from email.utils import parsedate_to_datetime
from http import HTTPStatus
from unittest.mock import MagicMock, patch

import requests

from tarlink.Archive import ArchiveBuilder, ArchiveBuildError
from tarlink.Server import DownloadHandler, TransferResponder

from .ServerTestBase import FILE_A_CONTENT, FILE_B_CONTENT, ServerTestBase, listArchive


class SlowBuilder(ArchiveBuilder):

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def build(self, paths):
        time.sleep(self.delay)
        return super().build(paths)


class TransferResponderTest(ServerTestBase):
    """Status and header selection without a network in between."""

    def setUp(self):
        super().setUp()
        self.responder = TransferResponder(self.sourcePaths)
        self.expected = self.buildExpectedArchive()

    def tearDown(self):
        self.responder.close()
        super().tearDown()

    def assertArchiveHeaders(self, headers):
        self.assertEqual(headers['Accept-Ranges'], 'bytes')
        self.assertEqual(headers['Content-Type'], 'application/x-tar')
        self.assertEqual(headers['Content-Disposition'], 'attachment; filename="archive.tar.gz"')

    def testFullContent(self):
        with self.responder.respond() as response:
            self.assertEqual(response.status, HTTPStatus.OK)
            self.assertArchiveHeaders(response.headers)
            self.assertNotIn('Content-Range', response.headers)
            self.assertEqual(response.contentLength, len(self.expected))
            self.assertEqual(response.read(), self.expected)

    def testBlankRangeIsFullContent(self):
        with self.responder.respond('   ') as response:
            self.assertEqual(response.status, HTTPStatus.OK)
            self.assertEqual(response.read(), self.expected)

    def testPartialContent(self):
        total = len(self.expected)
        with self.responder.respond('bytes=10-19') as response:
            self.assertEqual(response.status, HTTPStatus.PARTIAL_CONTENT)
            self.assertArchiveHeaders(response.headers)
            self.assertEqual(response.headers['Content-Range'], f'bytes 10-19/{total}')
            self.assertEqual(response.headers['Content-Length'], '10')
            self.assertEqual(response.read(), self.expected[10:20])

    def testOpenEndedRange(self):
        total = len(self.expected)
        with self.responder.respond(f'bytes={total - 1}-') as response:
            self.assertEqual(response.status, HTTPStatus.PARTIAL_CONTENT)
            self.assertEqual(response.read(), self.expected[-1:])

    def testSmallChunksCoverSlice(self):
        with self.responder.respond('bytes=3-40') as response:
            chunks = list(response.iterChunks(4))
        self.assertTrue(all(len(chunk) <= 4 for chunk in chunks))
        self.assertEqual(b''.join(chunks), self.expected[3:41])

    def testUnsatisfiableRange(self):
        total = len(self.expected)
        for header in [f'bytes={total}-', f'bytes=0-{total}', 'bytes=20-10', 'bytes=garbage']:
            with self.subTest(header=header):
                with self.responder.respond(header) as response:
                    self.assertEqual(response.status, HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
                    self.assertArchiveHeaders(response.headers)
                    self.assertEqual(response.headers['Content-Range'], f'bytes */{total}')
                    self.assertEqual(response.contentLength, 0)
                    self.assertEqual(response.read(), b'')

    def testMissingSourceIsBadRequest(self):
        os.remove(self.fileB)

        with self.responder.respond() as response:
            self.assertEqual(response.status, HTTPStatus.BAD_REQUEST)
            self.assertEqual(response.contentLength, 0)
            self.assertIsNone(response.blob)

    def testUnknownNameIsBadRequest(self):
        with self.responder.respond(names=['nope.txt']) as response:
            self.assertEqual(response.status, HTTPStatus.BAD_REQUEST)

    def testSelectedNames(self):
        with self.responder.respond(names=['fileB.txt']) as response:
            self.assertEqual(response.status, HTTPStatus.OK)
            self.assertEqual(listArchive(response.read()), [('fileB.txt', FILE_B_CONTENT)])

    def testBuildFailureIsServerError(self):
        builder = MagicMock()
        builder.build.side_effect = ArchiveBuildError('disk on fire')
        responder = TransferResponder(self.sourcePaths, builder=builder)

        try:
            with responder.respond('bytes=0-') as response:
                self.assertEqual(response.status, HTTPStatus.INTERNAL_SERVER_ERROR)
                self.assertEqual(response.contentLength, 0)
                self.assertNotIn('Content-Range', response.headers)
        finally:
            responder.close()

    def testUnexpectedFailureIsServerError(self):
        builder = MagicMock()
        builder.build.side_effect = RuntimeError('worker died')
        responder = TransferResponder(self.sourcePaths, builder=builder)

        try:
            with responder.respond() as response:
                self.assertEqual(response.status, HTTPStatus.INTERNAL_SERVER_ERROR)
        finally:
            responder.close()

    def testBuildTimeoutIsServerError(self):
        responder = TransferResponder(self.sourcePaths, builder=SlowBuilder(1.0), buildTimeout=0.1)

        try:
            with responder.respond() as response:
                self.assertEqual(response.status, HTTPStatus.INTERNAL_SERVER_ERROR)
        finally:
            responder.close()

    def testIdempotentResponses(self):
        """Two identical requests against unchanged files get identical answers."""
        with self.responder.respond('bytes=5-') as first, self.responder.respond('bytes=5-') as second:
            self.assertEqual(first.status, second.status)
            self.assertEqual(first.headers, second.headers)
            self.assertEqual(first.read(), second.read())


class DownloadServerTest(ServerTestBase):
    """Requests over a real loopback connection."""

    def setUp(self):
        super().setUp()
        self.server, self.baseURL = self.startServer()
        self.downloadURL = f'{self.baseURL}/download'
        self.expected = self.buildExpectedArchive()

    def testFullDownload(self):
        response = requests.get(self.downloadURL, timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Accept-Ranges'], 'bytes')
        self.assertEqual(response.headers['Content-Type'], 'application/x-tar')
        self.assertEqual(response.headers['Content-Disposition'], 'attachment; filename="archive.tar.gz"')
        self.assertEqual(int(response.headers['Content-Length']), len(self.expected))
        self.assertEqual(response.content, self.expected)
        self.assertEqual(
            listArchive(response.content), [('fileA.txt', FILE_A_CONTENT), ('fileB.txt', FILE_B_CONTENT)]
        )

    def testRangeDownload(self):
        total = len(self.expected)
        response = requests.get(self.downloadURL, headers={'Range': 'bytes=0-9'}, timeout=10)

        self.assertEqual(response.status_code, 206)
        self.assertEqual(response.headers['Content-Range'], f'bytes 0-9/{total}')
        self.assertEqual(response.content, self.expected[:10])

    def testRangePiecesReassemble(self):
        total = len(self.expected)
        pieces = []
        for start in range(0, total, 100):
            end = min(start + 99, total - 1)
            response = requests.get(self.downloadURL, headers={'Range': f'bytes={start}-{end}'}, timeout=10)
            self.assertEqual(response.status_code, 206)
            pieces.append(response.content)

        self.assertEqual(b''.join(pieces), self.expected)

    def testUnsatisfiableRange(self):
        total = len(self.expected)
        response = requests.get(self.downloadURL, headers={'Range': f'bytes={total}-'}, timeout=10)

        self.assertEqual(response.status_code, 416)
        self.assertEqual(response.headers['Content-Range'], f'bytes */{total}')
        self.assertEqual(response.content, b'')

    def testHeadRequest(self):
        response = requests.head(self.downloadURL, timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(int(response.headers['Content-Length']), len(self.expected))
        self.assertEqual(response.headers['Accept-Ranges'], 'bytes')
        self.assertEqual(response.content, b'')

    def testDateHeaderIsHTTPDate(self):
        response = requests.head(self.downloadURL, timeout=10)

        date = parsedate_to_datetime(response.headers['Date'])
        self.assertIsNotNone(date.tzinfo)
        self.assertTrue(response.headers['Date'].endswith(' GMT'))

    def testTrailingSlash(self):
        response = requests.get(f'{self.downloadURL}/', timeout=10)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, self.expected)

    def testUnknownPath(self):
        for path in ['/', '/archive.tar.gz', '/download/extra']:
            with self.subTest(path=path):
                response = requests.get(f'{self.baseURL}{path}', timeout=10)
                self.assertEqual(response.status_code, 404)

    def testFileSelection(self):
        response = requests.get(self.downloadURL, params=[('file', 'fileB.txt')], timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(listArchive(response.content), [('fileB.txt', FILE_B_CONTENT)])

    def testUnknownFileSelection(self):
        response = requests.get(self.downloadURL, params={'file': 'secret.txt'}, timeout=10)
        self.assertEqual(response.status_code, 400)

    def testMissingSourceAfterStart(self):
        os.remove(self.fileA)

        response = requests.get(self.downloadURL, timeout=10)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.content, b'')

    def testKeepAliveAcrossRequests(self):
        with requests.Session() as session:
            first = session.get(self.downloadURL, headers={'Range': 'bytes=0-4'}, timeout=10)
            second = session.get(self.downloadURL, headers={'Range': 'bytes=5-'}, timeout=10)

        self.assertEqual(first.content + second.content, self.expected)

    def testConcurrentRequests(self):
        results = [None] * 8

        def fetch(index):
            results[index] = requests.get(self.downloadURL, timeout=10).content

        threads = [threading.Thread(target=fetch, args=(i,)) for i in range(len(results))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        self.assertTrue(all(result == self.expected for result in results))


class DisconnectRecordingHandler(DownloadHandler):
    """Signals server.disconnected once a client drop has been handled."""

    def _handleDownloadExceptionActions(self, exception, written):
        super()._handleDownloadExceptionActions(exception, written)
        self.server.disconnected.set()


class ClientDisconnectTest(ServerTestBase):
    """A client that vanishes mid-body must not disturb the server."""

    def setUp(self):
        super().setUp()
        # Random bytes do not compress, so the body outgrows the socket buffers
        self.largeFile = self.createFile('large.bin', os.urandom(16 * 1024 * 1024))

    def readHeaders(self, sock):
        received = b''
        while b'\r\n\r\n' not in received:
            chunk = sock.recv(4096)
            if not chunk:
                break
            received += chunk
        return received.split(b'\r\n\r\n', 1)[0]

    def testResetDuringBody(self):
        server, baseURL = self.startServer(handlerClass=DisconnectRecordingHandler, paths=[self.largeFile])
        server.disconnected = threading.Event()

        with patch.object(server, 'handle_error') as mockHandleError:
            sock = socket.create_connection(('127.0.0.1', server.port), timeout=30)
            try:
                sock.sendall(b'GET /download HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n')
                headers = self.readHeaders(sock)
                self.assertTrue(headers.startswith(b'HTTP/1.1 200'))

                # Linger 0 turns close() into an RST
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
            finally:
                sock.close()

            self.assertTrue(server.disconnected.wait(30))

            response = requests.get(f'{baseURL}/download', headers={'Range': 'bytes=0-9'}, timeout=30)

        self.assertEqual(response.status_code, 206)
        self.assertEqual(len(response.content), 10)
        mockHandleError.assert_not_called()
        self.assertEqual(server.downloadCount, 0)
        self.assertFalse(server.stop)


class ServerLifecycleTest(ServerTestBase):

    def testMaxDownloads(self):
        """Only a transfer that reaches the last byte counts towards --max-downloads."""
        server, baseURL = self.startServer(maxDownloads=1)
        downloadURL = f'{baseURL}/download'

        response = requests.get(downloadURL, headers={'Range': 'bytes=0-9'}, timeout=10)
        self.assertEqual(response.status_code, 206)
        self.assertEqual(server.downloadCount, 0)

        response = requests.get(downloadURL, timeout=10)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, self.buildExpectedArchive())

        deadline = time.time() + 5
        while not server.stop and time.time() < deadline:
            time.sleep(0.05)

        self.assertEqual(server.downloadCount, 1)
        self.assertTrue(server.stop)

    def testTimeout(self):
        server, _ = self.startServer(timeout=1)

        deadline = time.time() + 5
        while not server.stop and time.time() < deadline:
            time.sleep(0.05)

        self.assertTrue(server.stop)


if __name__ == '__main__':
    unittest.main()
