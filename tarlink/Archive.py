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
import gzip
import tarfile
import tempfile

from typing import Iterator, Optional

from tarlink.Kernel import getLogger
from tarlink.Settings import ARCHIVE_SPOOL_SIZE, COMPRESS_LEVEL

logger = getLogger(__name__)


class ArchiveError(Exception):
    """Base class for archive construction failures"""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class SourceNotFoundError(ArchiveError):
    """A source path is missing or is not a regular file (an input problem)"""
    pass


class UnknownSourceError(SourceNotFoundError):
    """A requested name does not belong to the served file set"""
    pass


class ArchiveBuildError(ArchiveError):
    """Unexpected I/O failure while packing an existing source"""
    pass


class SourceFileSet:
    """
    Ordered, immutable list of the files a server is allowed to archive.

    Shared by every request thread, so it never changes after construction.
    """

    def __init__(self, paths):
        self._paths = tuple(paths)

    @classmethod
    def build(cls, paths) -> 'SourceFileSet':
        """Create and validate a set, raising SourceNotFoundError on the first bad path."""
        sourceFiles = cls(paths)
        sourceFiles.validate()
        return sourceFiles

    @property
    def paths(self):
        return self._paths

    @property
    def names(self):
        return [os.path.basename(path) for path in self._paths]

    def __iter__(self):
        return iter(self._paths)

    def __len__(self):
        return len(self._paths)

    def __repr__(self):
        return f'SourceFileSet({list(self._paths)!r})'

    def validate(self):
        if not self._paths:
            raise SourceNotFoundError('No source files given')

        for path in self._paths:
            if not os.path.isfile(path):
                raise SourceNotFoundError(f'Source file not found or is a directory: {path}', path)

    def select(self, names) -> 'SourceFileSet':
        """
        Pick entries by base name, in the order the names are given.

        An empty selection means the whole set. A name shared by several paths
        selects all of them, in set order.
        """
        if not names:
            return self

        selected = []
        for name in names:
            matches = [path for path in self._paths if os.path.basename(path) == name]
            if not matches:
                raise UnknownSourceError(f'Not a served file: {name}', name)
            selected.extend(matches)

        return SourceFileSet(selected)


class ArchiveBlob:
    """
    A finished archive owned by a single request.

    The size is fixed when the blob is created and every read is served from
    the same underlying file, so declared lengths always match streamed bytes.
    """

    def __init__(self, fileobj, size: int):
        self._fileobj = fileobj
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._fileobj is None

    def iterChunks(self, chunkSize: int, start: int = 0, end: Optional[int] = None) -> Iterator[bytes]:
        """
        Yield bytes [start, end] (inclusive) in chunks of at most chunkSize.

        Args:
            chunkSize: Maximum chunk length
            start: First byte offset
            end: Last byte offset, defaults to the final byte
        """
        if self._fileobj is None:
            raise ValueError('Archive blob is closed')

        if end is None:
            end = self._size - 1

        if start < 0 or end >= self._size or start > end + 1:
            raise ValueError(f'Slice {start}-{end} is outside archive of {self._size} bytes')

        self._fileobj.seek(start)
        remaining = end - start + 1

        while remaining > 0:
            chunk = self._fileobj.read(min(chunkSize, remaining))
            if not chunk:
                raise ArchiveBuildError(f'Archive ended early, {remaining} bytes missing')
            remaining -= len(chunk)
            yield chunk

    def read(self) -> bytes:
        """Return the whole archive."""
        if self._size == 0:
            return b''
        return b''.join(self.iterChunks(self._size))

    def close(self):
        if self._fileobj is not None:
            self._fileobj.close()
            self._fileobj = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()


class ArchiveBuilder:
    """
    Packs files into a gzip-compressed tar stream, each under its base name.

    The build is strict: any missing or non-regular source fails the whole
    archive. Output is deterministic for unchanged inputs (gzip mtime 0, no
    gzip file name, member owners cleared), so repeated builds keep the same
    length and a client's resume offset stays valid.
    """

    def __init__(self, compressLevel: int = COMPRESS_LEVEL, spoolSize: int = ARCHIVE_SPOOL_SIZE):
        self.compressLevel = compressLevel
        self.spoolSize = spoolSize

    def build(self, paths) -> ArchiveBlob:
        paths = list(paths)

        # Check everything before writing a single byte.
        SourceFileSet(paths).validate()

        spool = tempfile.SpooledTemporaryFile(max_size=self.spoolSize, prefix='tarlink-', suffix='.tar.gz')
        try:
            with gzip.GzipFile(filename='', mode='wb', fileobj=spool, compresslevel=self.compressLevel, mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode='w', format=tarfile.GNU_FORMAT) as tar:
                    for path in paths:
                        self._addFile(tar, path)

            spool.seek(0, os.SEEK_END)
            size = spool.tell()
        except ArchiveError:
            spool.close()
            raise
        except OSError as e:
            spool.close()
            raise ArchiveBuildError(f'Failed to archive {e.filename or "source"}: {e.strerror or e}', e.filename) from e
        except Exception:
            spool.close()
            raise

        logger.debug(f'Built archive of {len(paths)} file(s), {size} bytes')
        return ArchiveBlob(spool, size)

    def _addFile(self, tar, path):
        try:
            f = open(path, 'rb')
        except (FileNotFoundError, IsADirectoryError) as e:
            raise SourceNotFoundError(f'Source file not found or is a directory: {path}', path) from e

        with f:
            # fstat the opened file so symlinks are stored as the file they point to
            tarinfo = tar.gettarinfo(arcname=os.path.basename(path), fileobj=f)
            if not tarinfo.isreg():
                raise SourceNotFoundError(f'Source file not found or is a directory: {path}', path)

            tarinfo.mtime = int(tarinfo.mtime)
            tarinfo.uid = tarinfo.gid = 0
            tarinfo.uname = tarinfo.gname = ''

            tar.addfile(tarinfo, f)
