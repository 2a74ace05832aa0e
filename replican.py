#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
replican: Content-Addressed Block Index for rsync-style Synchronization
=======================================================================

Indexes a file or a directory tree into fixed-size, content-addressed
blocks so that a synchronization driver can tell which byte ranges of a
destination tree already match a source tree, without moving whole files.

Quick Start:
-----------
    >>> from replican import open_store
    >>>
    >>> # Index a directory (or a single file) and serve its bytes
    >>> store = open_store("/srv/data")
    >>> root = store.root()
    >>> print(f"{root.name}: {root.strong.hex()}")
    >>>
    >>> # Fetch a block by its strong checksum
    >>> block, found = store.index().strong_block(some_strong)
    >>> if found:
    ...     data = store.read_block(block.strong)

Key Features:
------------
    ✓ rsync weak rolling checksum (update in one pass, roll in O(1))
    ✓ Strong checksums (SHA1 default, MD5, SHA256, xxHash128)
    ✓ Merkle-style Dir/File/Block tree, deterministic across filesystems
    ✓ BlockIndex: O(1) lookup from strong checksum to Block or File
    ✓ LocalStore with relocation (move paths aside mid-sync, keep reading)
    ✓ Versioned binary node codec, compressed index cache files

Layout:
------
    Block   BLOCKSIZE (8192) bytes at offset position * BLOCKSIZE
    File    name, mode, strong, size, ordered Blocks
    Dir     name, mode, strong, sub-Dirs and Files keyed by name

Copyright:
---------
    Based on the rsync algorithm by Andrew Tridgell and Paul Mackerras.
    License: GPLv3+
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Checksums
    'WeakChecksum',
    'ChecksumType',
    'ChecksumRegistry',
    'ChecksumEngine',
    'weak_checksum',
    'strong_checksum',

    # Data model
    'NodeKind',
    'Node',
    'Block',
    'File',
    'Dir',
    'dir_listing',
    'dir_checksum',
    'walk_nodes',
    'node_rel_path',

    # Indexing
    'IndexStats',
    'IndexBuilder',
    'index_path',
    'index_dir',
    'index_file',
    'BlockIndex',

    # Stores
    'BlockStore',
    'LocalStore',
    'LocalDirStore',
    'LocalFileStore',
    'open_store',

    # Serialization
    'NodeWriter',
    'NodeReader',
    'encode_block',
    'decode_block',
    'encode_file',
    'decode_file',
    'encode_dir',
    'decode_dir',
    'encode_node',
    'decode_node',
    'CompressionType',
    'CompressionRegistry',
    'save_index',
    'load_index',

    # Exceptions
    'ReplicanError',
    'ValidationError',
    'NotFoundError',
    'ProtocolError',
    'VersionMismatchError',
    'FileIOError',
    'IndexingError',
    'ShortReadError',
    'DataIntegrityError',

    # Configuration
    'Config',

    # Constants
    'BLOCKSIZE',
    'RELOC_PREFIX',
    'NODE_CODEC_VERSION',
    'INDEX_CACHE_MAGIC',
    'INDEX_CACHE_FORMAT',

    # Utility functions
    'format_size',
]

import io
import os
import stat
import shutil
import struct
import hashlib
import logging
import tempfile
import threading
import time
import weakref
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from itertools import accumulate
from typing import (
    Any, BinaryIO, Callable, ClassVar, Dict, Iterator, List, Optional, Tuple,
    Union, cast,
)

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party imports to `Any` for strict type-checkers.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)


# ============================================================================
# CONSTANTS
# ============================================================================

BLOCKSIZE = 8192             # Fixed block length; the last block of a file may be shorter
WEAK_MASK = 0xFFFF           # Each weak accumulator is kept modulo 2^16

RELOC_PREFIX = "_reloc"      # Reserved name prefix for relocated entries under a store base

NODE_CODEC_VERSION = 1       # Bump whenever a node field layout changes

INDEX_CACHE_MAGIC = b"RPIX"  # Index cache file signature
INDEX_CACHE_FORMAT = 1       # Index cache header layout version
_INDEX_CACHE_HEADER = struct.Struct('<4sBB8s')  # magic, format, compression, xxh64(payload)

# varint prefix table, see ProtocolIO in rsync io.c (int_byte_extra)
_INT_BYTE_EXTRA: Tuple[int, ...] = (
    0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0,  # (00 - 3F)/4
    0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0,  # (40 - 7F)/4
    1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1,  # (80 - BF)/4
    2, 2, 2, 2, 2, 2, 2, 2, 3, 3, 3, 3, 4, 4, 5, 6,  # (C0 - FF)/4
)

_SIZE_MIN_BYTES = 3          # write_varlong(size, 3), as rsync does for file lengths


class ChecksumType(Enum):
    """
    Supported strong checksum algorithms.

    SHA1 is the default and the digest every peer must agree on; the others
    exist so that both ends of a sync can opt into a different trade-off.
    Trees built with different algorithms never share checksums.
    """
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    XXH128 = "xxh128"


class CompressionType(Enum):
    """
    Compression algorithms for index cache files.

    The numeric wire codes written to the cache header mirror rsync's
    CPRES_* constants (NONE=0, ZLIB=1, LZ4=3, ZSTD=4).
    """
    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


_COMPRESSION_CODES: Dict[CompressionType, int] = {
    CompressionType.NONE: 0,
    CompressionType.ZLIB: 1,
    CompressionType.LZ4: 3,
    CompressionType.ZSTD: 4,
}


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for replican behavior.

    Attributes:
        STRONG_CHECKSUM (ChecksumType): Default strong checksum for new engines
        CHUNK_SIZE_STREAMING (int): Copy buffer size used by LocalStore.read_into
        FOLLOW_SYMLINKS (bool): Index symlink targets instead of skipping links
        INDEX_COMPRESSION (CompressionType): Default compression for save_index
        VERBOSE_LOGGING (bool): Enable INFO level logging at import time
        ENABLE_PROFILING (bool): Log build timings at INFO level

    Example:
        >>> Config.STRONG_CHECKSUM = ChecksumType.SHA256
        >>> Config.reset_defaults()
    """
    STRONG_CHECKSUM: ClassVar[ChecksumType] = ChecksumType.SHA1
    CHUNK_SIZE_STREAMING: ClassVar[int] = 1024 * 1024  # 1MB copy buffer
    FOLLOW_SYMLINKS: ClassVar[bool] = False
    INDEX_COMPRESSION: ClassVar[CompressionType] = CompressionType.ZSTD
    VERBOSE_LOGGING: ClassVar[bool] = False
    ENABLE_PROFILING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "STRONG_CHECKSUM": ChecksumType.SHA1,
            "CHUNK_SIZE_STREAMING": 1024 * 1024,
            "FOLLOW_SYMLINKS": False,
            "INDEX_COMPRESSION": CompressionType.ZSTD,
            "VERBOSE_LOGGING": False,
            "ENABLE_PROFILING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class ReplicanError(Exception):
    """
    Base exception for all replican errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(ReplicanError):
    """
    Raised when input validation fails.

    Invalid offsets or lengths, or paths that do not live under a
    store's base directory.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class ProtocolError(ReplicanError):
    """
    Raised for malformed serialized data.

    Truncated node blobs, trailing garbage, unknown node kinds or bad
    index cache headers.
    """
    def __init__(self, message: str, code: int = 5) -> None:
        super().__init__(message, code)


class VersionMismatchError(ProtocolError):
    """Raised when a node blob carries a codec version other than ours."""
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Version {expected} of node codec cannot decode version {actual}", code=4
        )
        self.expected = expected
        self.actual = actual


class FileIOError(ReplicanError):
    """
    Raised for file I/O errors.

    This wraps OS-level file errors with replican-specific context.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class IndexingError(FileIOError):
    """Raised when a file or directory cannot be read while building an index."""
    def __init__(self, path: str, reason: Union[str, BaseException]) -> None:
        super().__init__(f"Cannot index {path}: {reason}")
        self.path = path


class ShortReadError(FileIOError):
    """Raised when a stored file ends before the requested range was copied."""
    def __init__(self, path: str, written: int, expected: int) -> None:
        super().__init__(
            f"Short read from {path}: copied {written} of {expected} bytes"
        )
        self.path = path
        self.written = written
        self.expected = expected


class NotFoundError(ReplicanError):
    """Raised by a store when a strong checksum is not in its index."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class DataIntegrityError(ReplicanError):
    """Raised when an index cache payload does not match its recorded digest."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=8)


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{size} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('replican')
logger.setLevel(_default_log_level)


# ============================================================================
# CHECKSUM IMPLEMENTATION - Weak rolling and strong checksums
# ============================================================================

class WeakChecksum:
    """
    rsync-style weak rolling checksum over a BLOCKSIZE window.

    Two accumulators are kept modulo 2^16:

        a = Σ x[i]
        b = Σ (n - i) * x[i]          (0-based i, n = window length)

    ``update()`` computes both from a buffer in one pass. ``roll()`` slides
    the window one byte in O(1):

        a -= removed - new
        b -= removed * BLOCKSIZE - a

    Starting from the all-zero state and rolling in BLOCKSIZE bytes yields
    the same checksum as ``update()`` over those bytes.

    Example:
        >>> wc = WeakChecksum()
        >>> wc.update(b"abc")
        >>> hex(wc.checksum)
        '0x24a0126'
    """

    __slots__ = ('a', 'b', 'window')

    def __init__(self, a: int = 0, b: int = 0, window: int = BLOCKSIZE) -> None:
        self.a = a & WEAK_MASK
        self.b = b & WEAK_MASK
        self.window = window

    def update(self, buf: Union[bytes, bytearray, memoryview]) -> None:
        """Reset both accumulators from ``buf``."""
        # s1 += x; s2 += s1  ==> s2 is the sum of running prefix sums
        self.a = sum(buf) & WEAK_MASK
        self.b = sum(accumulate(buf)) & WEAK_MASK

    def roll(self, removed_byte: int, new_byte: int) -> None:
        """Slide the window: drop ``removed_byte`` from the front, append ``new_byte``."""
        self.a = (self.a - (removed_byte - new_byte)) & WEAK_MASK
        self.b = (self.b - (removed_byte * self.window - self.a)) & WEAK_MASK

    @property
    def checksum(self) -> int:
        """Combined 32-bit value: ``b << 16 | a``."""
        return (self.b << 16) | self.a

    def __repr__(self) -> str:
        return f"WeakChecksum(a=0x{self.a:04x}, b=0x{self.b:04x})"


def weak_checksum(data: Union[bytes, bytearray, memoryview]) -> int:
    """Weak checksum of ``data`` in one pass."""
    wc = WeakChecksum()
    wc.update(data)
    return wc.checksum


class ChecksumRegistry:
    """
    Registry of strong checksum algorithms.

    Abstracts hashlib and xxhash behind two factories: a one-shot function
    for block digests and an incremental accumulator for whole-file digests.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.SHA1)
        >>> func(b"Hello, World!").hex()
        '0a0a9f2a6772942557ab5355d76af442f8f65e01'
    """

    @classmethod
    def get_checksum_accumulator(cls, checksum_type: ChecksumType) -> Any:
        """Return an incremental hasher exposing update()/digest()."""
        if checksum_type == ChecksumType.MD5:
            return hashlib.md5()
        if checksum_type == ChecksumType.SHA1:
            return hashlib.sha1()
        if checksum_type == ChecksumType.SHA256:
            return hashlib.sha256()
        if checksum_type == ChecksumType.XXH128:
            return xxhash.xxh3_128()
        raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @classmethod
    def get_checksum_function(cls, checksum_type: ChecksumType) -> Callable[[bytes], bytes]:
        """
        Get checksum function for given type.

        Raises:
            ValueError: If checksum type is not supported
        """
        if checksum_type == ChecksumType.MD5:
            return cls._md5_checksum
        elif checksum_type == ChecksumType.SHA1:
            return cls._sha1_checksum
        elif checksum_type == ChecksumType.SHA256:
            return cls._sha256_checksum
        elif checksum_type == ChecksumType.XXH128:
            return cls._xxh128_checksum
        else:
            raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @staticmethod
    def _md5_checksum(data: bytes) -> bytes:
        return hashlib.md5(data).digest()

    @staticmethod
    def _sha1_checksum(data: bytes) -> bytes:
        return hashlib.sha1(data).digest()

    @staticmethod
    def _sha256_checksum(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    @staticmethod
    def _xxh128_checksum(data: bytes) -> bytes:
        return xxhash.xxh3_128(data).digest()

    @staticmethod
    def get_digest_length(checksum_type: ChecksumType) -> int:
        """Get the digest length in bytes for a checksum type."""
        lengths = {
            ChecksumType.MD5: 16,
            ChecksumType.SHA1: 20,
            ChecksumType.SHA256: 32,
            ChecksumType.XXH128: 16,
        }
        return lengths[checksum_type]


def strong_checksum(data: Union[bytes, bytearray, memoryview],
                    checksum_type: Optional[ChecksumType] = None) -> bytes:
    """Strong checksum of exactly ``data``, computed fresh."""
    func = ChecksumRegistry.get_checksum_function(checksum_type or Config.STRONG_CHECKSUM)
    return func(bytes(data))


class ChecksumEngine:
    """
    Computes the weak and strong checksums used by the index.

    Attributes:
        block_size: Size of blocks for checksumming
        checksum_type: Algorithm for strong checksums

    Example:
        >>> engine = ChecksumEngine()
        >>> for weak, strong in engine.block_checksums(data):
        ...     print(f"0x{weak:08x} {strong.hex()}")
    """

    def __init__(
        self,
        block_size: int = BLOCKSIZE,
        checksum_type: Optional[ChecksumType] = None
    ) -> None:
        if block_size <= 0:
            raise ValidationError(f"Block size must be positive, got {block_size}")
        self.block_size = block_size
        self.checksum_type = checksum_type or Config.STRONG_CHECKSUM
        self.strong_checksum_func = ChecksumRegistry.get_checksum_function(self.checksum_type)

    def weak_checksum(self, data: Union[bytes, bytearray, memoryview]) -> int:
        wc = WeakChecksum(window=self.block_size)
        wc.update(data)
        return wc.checksum

    def strong_checksum(self, data: Union[bytes, bytearray, memoryview]) -> bytes:
        return self.strong_checksum_func(bytes(data))

    def file_accumulator(self) -> Any:
        """Running strong hash for a whole file stream."""
        return ChecksumRegistry.get_checksum_accumulator(self.checksum_type)

    def block_checksums(self, data: Union[bytes, bytearray]) -> List[Tuple[int, bytes]]:
        """
        Generate checksums for all blocks in data.

        Returns:
            List of (weak_checksum, strong_checksum) tuples in block order
        """
        blocks: List[Tuple[int, bytes]] = []
        block_size = self.block_size

        for offset in range(0, len(data), block_size):
            block = data[offset:offset + block_size]
            blocks.append((self.weak_checksum(block), self.strong_checksum(block)))

        return blocks


# ============================================================================
# INDEX TREE - Block / File / Dir nodes
# ============================================================================
#
# Ownership flows root to leaf: a Dir owns its sub-Dirs and Files, a File
# owns its Blocks. The upward `parent` link is a weak reference assigned only
# after the owner's child collection is complete.

class NodeKind(IntEnum):
    """Node variant tags; the values double as the kind byte in encode_node()."""
    BLOCK = 1
    FILE = 2
    DIR = 3


class Node(ABC):
    """Capability shared by Block, File and Dir."""

    kind: ClassVar[NodeKind]
    strong: bytes

    def __init__(self) -> None:
        self._parent_ref: Optional[weakref.ReferenceType[Node]] = None

    @property
    def parent(self) -> Optional[Node]:
        """Owning node, or None at the top of a tree."""
        return self._parent_ref() if self._parent_ref is not None else None

    def _set_parent(self, parent: Optional[Node]) -> None:
        self._parent_ref = weakref.ref(parent) if parent is not None else None

    @abstractmethod
    def children(self) -> List[Node]:
        raise NotImplementedError


class Block(Node):
    """
    A BLOCKSIZE chunk of a File.

    Attributes:
        position: Ordinal within the owning File (offset = position * BLOCKSIZE)
        weak: 32-bit weak rolling checksum
        strong: Strong checksum digest of the block bytes
    """

    kind = NodeKind.BLOCK

    def __init__(self, position: int = 0, weak: int = 0, strong: bytes = b"") -> None:
        super().__init__()
        self.position = position
        self.weak = weak
        self.strong = strong

    @property
    def file(self) -> Optional[File]:
        return cast(Optional[File], self.parent)

    @property
    def offset(self) -> int:
        return self.position * BLOCKSIZE

    @property
    def length(self) -> int:
        """Byte length of this block; the last block of a file may be short."""
        owner = self.file
        if owner is None:
            return BLOCKSIZE
        return max(0, min(BLOCKSIZE, owner.size - self.offset))

    def children(self) -> List[Node]:
        return []

    def __repr__(self) -> str:
        return (
            f"Block(position={self.position}, weak=0x{self.weak:08x}, "
            f"strong={self.strong.hex()[:16]}...)"
        )


class File(Node):
    """A regular file: name, permission mode, whole-content strong checksum, size, Blocks."""

    kind = NodeKind.FILE

    def __init__(self, name: str = "", mode: int = 0, strong: bytes = b"", size: int = 0,
                 blocks: Optional[List[Block]] = None) -> None:
        super().__init__()
        self.name = name
        self.mode = mode
        self.strong = strong
        self.size = size
        self.blocks: List[Block] = []
        self._adopt(blocks or [])

    def _adopt(self, blocks: List[Block]) -> None:
        self.blocks = list(blocks)
        for block in self.blocks:
            block._set_parent(self)

    def children(self) -> List[Node]:
        return []

    def __repr__(self) -> str:
        return (
            f"File(name={self.name!r}, size={format_size(self.size)}, "
            f"blocks={len(self.blocks)}, strong={self.strong.hex()[:16]}...)"
        )


class Dir(Node):
    """A directory: sub-Dirs and Files keyed by name, kept in name order."""

    kind = NodeKind.DIR

    def __init__(self, name: str = "", mode: int = 0, strong: bytes = b"",
                 subdirs: Optional[Dict[str, Dir]] = None,
                 files: Optional[Dict[str, File]] = None) -> None:
        super().__init__()
        self.name = name
        self.mode = mode
        self.strong = strong
        self.subdirs: Dict[str, Dir] = {}
        self.files: Dict[str, File] = {}
        self._adopt(subdirs or {}, files or {})

    def _adopt(self, subdirs: Dict[str, Dir], files: Dict[str, File]) -> None:
        self.subdirs = dict(sorted(subdirs.items()))
        self.files = dict(sorted(files.items()))
        for child in self.children():
            child._set_parent(self)

    def children(self) -> List[Node]:
        return [*self.subdirs.values(), *self.files.values()]

    def __repr__(self) -> str:
        return (
            f"Dir(name={self.name!r}, subdirs={len(self.subdirs)}, "
            f"files={len(self.files)}, strong={self.strong.hex()[:16]}...)"
        )


def _listing_name(name: str) -> str:
    return name.replace("\\", "\\\\").replace("\t", "\\t").replace("\n", "\\n")


def dir_listing(directory: Dir) -> bytes:
    """
    Canonical listing hashed into a Dir's strong checksum.

    One line per child, ``name \\t d|f \\t hexdigest \\n``, sub-Dirs first
    then Files, each group sorted by name so the result never depends on
    the order the filesystem returned entries in. Backslash, tab and newline
    in names are escaped so a name cannot forge another line.
    """
    lines: List[str] = []
    for name in sorted(directory.subdirs):
        lines.append(f"{_listing_name(name)}\td\t{directory.subdirs[name].strong.hex()}\n")
    for name in sorted(directory.files):
        lines.append(f"{_listing_name(name)}\tf\t{directory.files[name].strong.hex()}\n")
    return "".join(lines).encode("utf-8", errors="surrogateescape")


def dir_checksum(directory: Dir, checksum_type: Optional[ChecksumType] = None) -> bytes:
    """Merkle-style strong checksum of a Dir over its sorted children."""
    return strong_checksum(dir_listing(directory), checksum_type)


def walk_nodes(root: Node) -> Iterator[Node]:
    """Pre-order traversal: a Dir, its sub-Dirs, its Files, each File's Blocks."""
    yield root
    if root.kind == NodeKind.DIR:
        directory = cast(Dir, root)
        for subdir in directory.subdirs.values():
            yield from walk_nodes(subdir)
        for file in directory.files.values():
            yield from walk_nodes(file)
    elif root.kind == NodeKind.FILE:
        yield from cast(File, root).blocks


def node_rel_path(node: Node) -> str:
    """
    Path of ``node`` relative to the top of its tree.

    The top node contributes no component; a Block resolves to the path of
    its owning File.
    """
    current: Optional[Node] = node
    if node.kind == NodeKind.BLOCK:
        current = node.parent

    parts: List[str] = []
    while current is not None and current.parent is not None:
        parts.append(cast(Union[File, Dir], current).name)
        current = current.parent

    return os.path.join(*reversed(parts)) if parts else ""


# ============================================================================
# INDEX BUILDER - Filesystem walk into a content-addressed tree
# ============================================================================

@dataclass
class IndexStats:
    """Counters collected while building one index tree."""
    dirs: int = 0
    files: int = 0
    blocks: int = 0
    bytes_indexed: int = 0
    skipped: int = 0
    elapsed: float = 0.0

    def __repr__(self) -> str:
        return (
            f"IndexStats(dirs={self.dirs}, files={self.files}, blocks={self.blocks}, "
            f"size={format_size(self.bytes_indexed)}, skipped={self.skipped}, "
            f"elapsed={self.elapsed * 1000:.2f}ms)"
        )


class IndexBuilder:
    """
    Walks a filesystem root and builds an immutable Dir/File/Block tree.

    A directory root yields a Dir, a regular file root yields a bare File.
    Directory entries are visited in name order and a Dir's checksum is
    computed only once all of its children are indexed. Entries named with
    RELOC_PREFIX are relocated copies and never enter the index. Symlinks
    are skipped unless ``follow_symlinks`` is set; sockets, FIFOs and
    devices are always skipped.

    Any OSError aborts the whole build with an IndexingError naming the
    offending path.

    Attributes:
        engine: ChecksumEngine used for block and file checksums
        follow_symlinks: Index symlink targets instead of skipping links
        last_stats: IndexStats from the most recent build

    Example:
        >>> builder = IndexBuilder()
        >>> root = builder.build("/srv/data")
        >>> print(builder.last_stats)
    """

    def __init__(self, checksum_type: Optional[ChecksumType] = None,
                 follow_symlinks: Optional[bool] = None) -> None:
        self.engine = ChecksumEngine(checksum_type=checksum_type)
        self.follow_symlinks = Config.FOLLOW_SYMLINKS if follow_symlinks is None else follow_symlinks
        self.last_stats: Optional[IndexStats] = None
        self._stats = IndexStats()

    @property
    def checksum_type(self) -> ChecksumType:
        return self.engine.checksum_type

    def build(self, root_path: Union[str, os.PathLike]) -> Union[Dir, File]:
        """Index ``root_path``, selecting directory or single-file mode from its type."""
        path = os.fspath(root_path)
        try:
            st = os.stat(path)
        except OSError as e:
            raise IndexingError(path, e) from e

        if stat.S_ISDIR(st.st_mode):
            return self._run(self._index_dir, path, st)
        if stat.S_ISREG(st.st_mode):
            return self._run(self._index_file, path, st)
        raise IndexingError(path, "not a regular file or directory")

    def build_dir(self, root_path: Union[str, os.PathLike]) -> Dir:
        root = self.build(root_path)
        if root.kind != NodeKind.DIR:
            raise IndexingError(os.fspath(root_path), "not a directory")
        return cast(Dir, root)

    def build_file(self, root_path: Union[str, os.PathLike]) -> File:
        root = self.build(root_path)
        if root.kind != NodeKind.FILE:
            raise IndexingError(os.fspath(root_path), "not a regular file")
        return cast(File, root)

    def _run(self, index_func: Callable[[str, os.stat_result], Any],
             path: str, st: os.stat_result) -> Any:
        self._stats = IndexStats()
        start = time.perf_counter()
        root = index_func(path, st)
        self._stats.elapsed = time.perf_counter() - start
        self.last_stats = self._stats
        logger.info(f"Indexed {path}: {self._stats}")
        if Config.ENABLE_PROFILING:
            logger.info(f"[PROFILE] index {path}: {self._stats.elapsed * 1000:.2f}ms")
        return root

    def _index_dir(self, path: str, st: os.stat_result) -> Dir:
        try:
            with os.scandir(path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise IndexingError(path, e) from e

        subdirs: Dict[str, Dir] = {}
        files: Dict[str, File] = {}

        for entry in entries:
            if entry.name.startswith(RELOC_PREFIX):
                logger.debug(f"Skipping relocated entry {entry.path}")
                self._stats.skipped += 1
                continue

            try:
                if entry.is_symlink() and not self.follow_symlinks:
                    logger.debug(f"Skipping symlink {entry.path}")
                    self._stats.skipped += 1
                    continue
                if entry.is_dir(follow_symlinks=self.follow_symlinks):
                    subdirs[entry.name] = self._index_dir(entry.path, entry.stat())
                elif entry.is_file(follow_symlinks=self.follow_symlinks):
                    files[entry.name] = self._index_file(entry.path, entry.stat())
                else:
                    logger.debug(f"Skipping special file {entry.path}")
                    self._stats.skipped += 1
            except OSError as e:
                raise IndexingError(entry.path, e) from e

        directory = Dir(
            name=os.path.basename(os.path.normpath(path)),
            mode=stat.S_IMODE(st.st_mode),
            subdirs=subdirs,
            files=files,
        )
        directory.strong = dir_checksum(directory, self.engine.checksum_type)
        self._stats.dirs += 1
        return directory

    def _index_file(self, path: str, st: os.stat_result) -> File:
        blocks: List[Block] = []
        file_sum = self.engine.file_accumulator()
        size = 0

        try:
            with open(path, 'rb') as fh:
                while True:
                    buf = fh.read(BLOCKSIZE)
                    if not buf:
                        break
                    blocks.append(Block(
                        position=len(blocks),
                        weak=self.engine.weak_checksum(buf),
                        strong=self.engine.strong_checksum(buf),
                    ))
                    file_sum.update(buf)
                    size += len(buf)
        except OSError as e:
            raise IndexingError(path, e) from e

        self._stats.files += 1
        self._stats.blocks += len(blocks)
        self._stats.bytes_indexed += size

        return File(
            name=os.path.basename(path),
            mode=stat.S_IMODE(st.st_mode),
            strong=file_sum.digest(),
            size=size,
            blocks=blocks,
        )


def index_path(root_path: Union[str, os.PathLike],
               checksum_type: Optional[ChecksumType] = None) -> Union[Dir, File]:
    """Index a directory (Dir root) or a single regular file (File root)."""
    return IndexBuilder(checksum_type).build(root_path)


def index_dir(root_path: Union[str, os.PathLike],
              checksum_type: Optional[ChecksumType] = None) -> Dir:
    return IndexBuilder(checksum_type).build_dir(root_path)


def index_file(root_path: Union[str, os.PathLike],
               checksum_type: Optional[ChecksumType] = None) -> File:
    return IndexBuilder(checksum_type).build_file(root_path)


# ============================================================================
# BLOCK INDEX - Strong checksum lookup over a completed tree
# ============================================================================

class BlockIndex:
    """
    Lookup from strong checksum to Block and File nodes.

    Built once from a completed tree and never modified; a changed tree
    needs a new BlockIndex. The index holds the tree's root, so parent
    links of the Blocks and Files it returns stay valid while it lives. Files with identical content share a strong
    checksum but stay separate entries, see ``files_with_strong()``.

    Example:
        >>> index = BlockIndex(root)
        >>> block, found = index.strong_block(strong)
        >>> if not found:
        ...     fetch_from_peer(strong)
    """

    def __init__(self, root: Node) -> None:
        # Nodes only hold weak parent links; the index keeps the tree alive.
        self._root = root
        self._blocks: Dict[bytes, Block] = {}
        self._files: Dict[bytes, List[File]] = {}
        self._file_count = 0

        for node in walk_nodes(root):
            if node.kind == NodeKind.BLOCK:
                self._blocks.setdefault(node.strong, cast(Block, node))
            elif node.kind == NodeKind.FILE:
                self._files.setdefault(node.strong, []).append(cast(File, node))
                self._file_count += 1

    @property
    def root(self) -> Node:
        """Top of the indexed tree."""
        return self._root

    def strong_block(self, strong: bytes) -> Tuple[Optional[Block], bool]:
        """Return ``(block, True)``, or ``(None, False)`` if unknown."""
        block = self._blocks.get(strong)
        return block, block is not None

    def strong_file(self, strong: bytes) -> Tuple[Optional[File], bool]:
        """Return ``(file, True)``, or ``(None, False)`` if unknown."""
        files = self._files.get(strong)
        if not files:
            return None, False
        return files[0], True

    def files_with_strong(self, strong: bytes) -> List[File]:
        """Every File entry whose content has this strong checksum."""
        return list(self._files.get(strong, ()))

    @property
    def block_count(self) -> int:
        """Distinct block checksums."""
        return len(self._blocks)

    @property
    def file_count(self) -> int:
        """File entries, duplicates included."""
        return self._file_count

    def __contains__(self, strong: object) -> bool:
        return strong in self._blocks or strong in self._files

    def __repr__(self) -> str:
        return f"BlockIndex(blocks={self.block_count}, files={self.file_count})"


# ============================================================================
# BLOCK STORES - Resolve checksums to bytes on disk
# ============================================================================

class BlockStore(ABC):
    """
    Raw byte access consumed by a synchronization driver.

    Implementations expose the index tree and serve block or file ranges
    by strong checksum.
    """

    @abstractmethod
    def root(self) -> Union[Dir, File]:
        """Top-level index node."""
        raise NotImplementedError

    @abstractmethod
    def index(self) -> BlockIndex:
        raise NotImplementedError

    @abstractmethod
    def read_block(self, strong: bytes) -> bytes:
        """Bytes of the block with this strong checksum."""
        raise NotImplementedError

    @abstractmethod
    def read_into(self, strong: bytes, offset: int, length: int, writer: BinaryIO) -> int:
        """Copy ``length`` bytes at ``offset`` of the file with this strong checksum."""
        raise NotImplementedError


class LocalStore(BlockStore):
    """
    BlockStore over the local filesystem, with relocation.

    Logical paths are relative to ``base_dir``. ``relocate()`` moves an
    entry to a unique ``RELOC_PREFIX`` name under ``base_dir`` and records
    the move, so a sync driver can put a new version in place while still
    reading unchanged bytes of the old one through the same index.
    Relocation never changes a node's checksum, only where its bytes live.

    The tree and BlockIndex are read-only once built and may be shared by
    concurrent readers; the relocation table is guarded by a lock.

    Subclasses choose the root kind: LocalDirStore (Dir root) and
    LocalFileStore (File root). Use ``open_store()`` to pick one.
    """

    def __init__(self, root_path: Union[str, os.PathLike],
                 checksum_type: Optional[ChecksumType] = None) -> None:
        self.root_path = os.path.abspath(os.fspath(root_path))
        self._builder = IndexBuilder(checksum_type)
        self._relocs: Dict[str, str] = {}
        self._reloc_copies: List[str] = []
        self._reloc_lock = threading.Lock()
        self._root: Union[Dir, File]
        self._index: BlockIndex
        self.reindex()

    @property
    @abstractmethod
    def base_dir(self) -> str:
        """Directory that relative paths and relocations are anchored to."""
        raise NotImplementedError

    @abstractmethod
    def _build_tree(self) -> Union[Dir, File]:
        raise NotImplementedError

    @abstractmethod
    def _file_rel_path(self, file: File) -> str:
        raise NotImplementedError

    @property
    def last_stats(self) -> Optional[IndexStats]:
        return self._builder.last_stats

    def reindex(self) -> None:
        """
        Rebuild the tree and BlockIndex wholesale.

        The new tree describes the paths as they are on disk now, so the
        relocation table is emptied in the same step. Relocated copies stay
        on disk, outside the index, until ``clear_relocations()``.
        """
        root = self._build_tree()
        index = BlockIndex(root)
        with self._reloc_lock:
            self._root, self._index = root, index
            self._relocs = {}

    def root(self) -> Union[Dir, File]:
        return self._root

    def index(self) -> BlockIndex:
        return self._index

    # ------------------------------------------------------------------
    # Path resolution and relocation
    # ------------------------------------------------------------------

    def rel_path(self, full_path: Union[str, os.PathLike]) -> str:
        """
        Strip the store base and leading separators from ``full_path``.

        Raises:
            ValidationError: If the path is not under the store base
        """
        path = os.path.abspath(os.fspath(full_path))
        base = self.base_dir
        if path == base:
            return ""
        if not path.startswith(base.rstrip("/\\") + os.sep):
            raise ValidationError(f"Path {path} is outside store base {base}")
        return path[len(base):].lstrip("/\\")

    def relocate(self, full_path: Union[str, os.PathLike]) -> str:
        """
        Move a file or directory aside to a unique name under the store base.

        A placeholder is created to claim the name atomically, removed, and
        the entry moved onto it. The mapping is recorded only after the move
        succeeds. If the path was already relocated, the first copy keeps
        serving the indexed content and the new copy is only tracked for
        ``clear_relocations()``.

        Returns:
            Full path of the relocated entry
        """
        path = os.path.abspath(os.fspath(full_path))
        relpath = self.rel_path(path)
        if not relpath:
            raise ValidationError(f"Cannot relocate store base {self.base_dir}")

        with self._reloc_lock:
            fd, reloc_full_path = tempfile.mkstemp(prefix=RELOC_PREFIX, dir=self.base_dir)
            os.close(fd)
            os.remove(reloc_full_path)

            shutil.move(path, reloc_full_path)

            reloc_relpath = self.rel_path(reloc_full_path)
            self._relocs.setdefault(relpath, reloc_relpath)
            self._reloc_copies.append(reloc_relpath)

        logger.info(f"Relocated {relpath} -> {reloc_relpath}")
        return reloc_full_path

    def resolve(self, relpath: str) -> str:
        """
        Physical path for a logical relative path.

        An exact relocation entry wins; otherwise the nearest relocated
        ancestor directory is substituted.
        """
        with self._reloc_lock:
            physical = self._lookup_reloc(relpath)
        if not physical:
            return self.base_dir
        return os.path.join(self.base_dir, physical)

    def _lookup_reloc(self, relpath: str) -> str:
        if relpath in self._relocs:
            return self._relocs[relpath]

        parent, suffix = os.path.split(relpath)
        while parent:
            if parent in self._relocs:
                return os.path.join(self._relocs[parent], suffix)
            parent, tail = os.path.split(parent)
            suffix = os.path.join(tail, suffix)
        return relpath

    def relocations(self) -> Dict[str, str]:
        """Snapshot of the relocation table (logical -> relocated relpath)."""
        with self._reloc_lock:
            return dict(self._relocs)

    def clear_relocations(self) -> int:
        """
        Delete relocated copies and empty the relocation table.

        Returns:
            Number of relocated entries removed
        """
        with self._reloc_lock:
            copies, self._reloc_copies = self._reloc_copies, []
            self._relocs = {}

        removed = 0
        for reloc_relpath in copies:
            target = os.path.join(self.base_dir, reloc_relpath)
            if os.path.isdir(target) and not os.path.islink(target):
                shutil.rmtree(target)
            elif os.path.lexists(target):
                os.remove(target)
            else:
                continue
            removed += 1

        logger.info(f"Removed {removed} relocated entries under {self.base_dir}")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_block(self, strong: bytes) -> bytes:
        """
        Bytes of the block with this strong checksum.

        Raises:
            NotFoundError: If no block has this checksum
        """
        block, found = self._index.strong_block(strong)
        if not found or block is None or block.file is None:
            raise NotFoundError(f"Block with strong checksum {strong.hex()} not found")

        buf = io.BytesIO()
        self.read_into(block.file.strong, block.offset, block.length, buf)
        return buf.getvalue()

    def read_into(self, strong: bytes, offset: int, length: int, writer: BinaryIO) -> int:
        """
        Copy ``length`` bytes from ``offset`` of the file with this checksum.

        The file's current physical path goes through the relocation table.

        Returns:
            Bytes written, always exactly ``length``

        Raises:
            NotFoundError: If no file has this checksum
            ValidationError: If offset or length is negative
            ShortReadError: If the file ends before ``length`` bytes were copied
            OSError: Propagated unchanged from open/seek/read
        """
        file, found = self._index.strong_file(strong)
        if not found or file is None:
            raise NotFoundError(f"File with strong checksum {strong.hex()} not found")
        if offset < 0 or length < 0:
            raise ValidationError(f"Invalid range: offset={offset}, length={length}")

        path = self.resolve(self._file_rel_path(file))
        written = 0

        with open(path, 'rb') as fh:
            fh.seek(offset)
            while written < length:
                chunk = fh.read(min(length - written, Config.CHUNK_SIZE_STREAMING))
                if not chunk:
                    raise ShortReadError(path, written, length)
                writer.write(chunk)
                written += len(chunk)

        logger.debug(f"Read {written} bytes at offset {offset} from {path}")
        return written

    def save_index(self, path: Union[str, os.PathLike],
                   compression: Optional[CompressionType] = None) -> int:
        """Write this store's tree to an index cache file (see save_index())."""
        return save_index(self._root, path, compression)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.root_path!r}, {self._index!r})"


class LocalDirStore(LocalStore):
    """LocalStore rooted at a directory; ``root()`` is a Dir."""

    @property
    def base_dir(self) -> str:
        return self.root_path

    def _build_tree(self) -> Dir:
        return self._builder.build_dir(self.root_path)

    def root(self) -> Dir:
        return cast(Dir, self._root)

    def _file_rel_path(self, file: File) -> str:
        return node_rel_path(file)


class LocalFileStore(LocalStore):
    """
    LocalStore rooted at a single file; ``root()`` is a File.

    Relocations land in the file's parent directory, and the root File's
    logical path is its own name.
    """

    @property
    def base_dir(self) -> str:
        return os.path.dirname(self.root_path)

    def _build_tree(self) -> File:
        return self._builder.build_file(self.root_path)

    def root(self) -> File:
        return cast(File, self._root)

    def _file_rel_path(self, file: File) -> str:
        return os.path.basename(self.root_path)


def open_store(root_path: Union[str, os.PathLike],
               checksum_type: Optional[ChecksumType] = None) -> LocalStore:
    """
    Open a LocalStore, choosing the variant from the root's type.

    Raises:
        FileIOError: If the root cannot be accessed
        ValidationError: If the root is neither a directory nor a regular file
    """
    path = os.fspath(root_path)
    try:
        st = os.stat(path)
    except OSError as e:
        raise FileIOError(f"Cannot access store root {path}: {e}") from e

    if stat.S_ISDIR(st.st_mode):
        return LocalDirStore(path, checksum_type)
    if stat.S_ISREG(st.st_mode):
        return LocalFileStore(path, checksum_type)
    raise ValidationError(f"Store root {path} is neither a directory nor a regular file")


# ============================================================================
# NODE CODEC - Versioned positional binary encoding
# ============================================================================
#
# Every node blob starts with varint NODE_CODEC_VERSION, then its fields:
#
#   Block: varint position, uint32 weak, vbytes strong
#   File:  vstring name, varint mode, vbytes strong, varlong(3) size,
#          varint count, count x vbytes(Block blob)
#   Dir:   vstring name, varint mode, vbytes strong,
#          varint count, count x vbytes(Dir blob),
#          varint count, count x vbytes(File blob)
#
# Child blobs are versioned independently. Parent links are never written;
# decoders re-derive them after the children are materialized.

class NodeWriter:
    """Append-only buffer with rsync's integer encodings (io.c write_*)."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def write_bytes(self, data: bytes) -> None:
        self._buf += data

    def write_byte(self, value: int) -> None:
        self._buf.append(value & 0xFF)

    def write_uint(self, value: int) -> None:
        """32-bit little-endian unsigned integer."""
        self.write_bytes(struct.pack('<I', value & 0xFFFFFFFF))

    def write_varint(self, value: int) -> None:
        """Variable-length int32 (io.c write_varint)."""
        b = bytearray(5)
        b[1:5] = struct.pack('<I', value & 0xFFFFFFFF)

        cnt = 4
        while cnt > 1 and b[cnt] == 0:
            cnt -= 1
        bit = 1 << (8 - cnt)

        if b[cnt] >= bit:
            cnt += 1
            b[0] = (~(bit - 1)) & 0xFF
        elif cnt > 1:
            b[0] = (b[cnt] | (~(bit * 2 - 1) & 0xFF)) & 0xFF
        else:
            b[0] = b[1]

        self.write_bytes(bytes(b[:cnt]))

    def write_varlong(self, value: int, min_bytes: int) -> None:
        """Variable-length int64 with at least ``min_bytes`` bytes (io.c write_varlong)."""
        if min_bytes < 1 or min_bytes > 8:
            raise ProtocolError(f"Invalid min_bytes for write_varlong(): {min_bytes}")

        b = bytearray(9)
        b[1:9] = struct.pack('<q', int(value))

        cnt = 8
        while cnt > min_bytes and b[cnt] == 0:
            cnt -= 1
        bit = 1 << (7 - cnt + min_bytes)

        if b[cnt] >= bit:
            cnt += 1
            b[0] = (~(bit - 1)) & 0xFF
        elif cnt > min_bytes:
            b[0] = (b[cnt] | (~(bit * 2 - 1) & 0xFF)) & 0xFF
        else:
            b[0] = b[cnt]

        self.write_bytes(bytes(b[:cnt]))

    def write_vbytes(self, data: bytes) -> None:
        """Length-prefixed byte string."""
        self.write_varint(len(data))
        self.write_bytes(data)

    def write_vstring(self, s: str) -> None:
        self.write_vbytes(s.encode("utf-8", errors="surrogateescape"))

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class NodeReader:
    """Cursor over a node blob; raises ProtocolError on truncation."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._data = bytes(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read_bytes(self, size: int) -> bytes:
        if size < 0 or self._pos + size > len(self._data):
            raise ProtocolError(
                f"Truncated node data: needed {size} bytes at offset {self._pos}, "
                f"have {self.remaining}"
            )
        data = self._data[self._pos:self._pos + size]
        self._pos += size
        return data

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_uint(self) -> int:
        return struct.unpack('<I', self.read_bytes(4))[0]

    def read_varint(self) -> int:
        """Variable-length int32 (io.c read_varint)."""
        ch = self.read_byte()
        extra = _INT_BYTE_EXTRA[ch // 4]
        if extra:
            if extra >= 5:
                raise ProtocolError("Overflow in read_varint()")
            bit = 1 << (8 - extra)
            buf = bytearray(5)
            buf[:extra] = self.read_bytes(extra)
            buf[extra] = ch & (bit - 1)
            return int.from_bytes(buf[:4], 'little', signed=True)
        return int.from_bytes(bytes([ch, 0, 0, 0]), 'little', signed=True)

    def read_varlong(self, min_bytes: int) -> int:
        """Variable-length int64 (io.c read_varlong)."""
        if min_bytes < 1 or min_bytes > 8:
            raise ProtocolError(f"Invalid min_bytes for read_varlong(): {min_bytes}")

        b2 = self.read_bytes(min_bytes)
        extra = _INT_BYTE_EXTRA[b2[0] // 4]

        buf = bytearray(9)
        if min_bytes > 1:
            buf[0:min_bytes - 1] = b2[1:min_bytes]

        if extra:
            if min_bytes + extra > len(buf):
                raise ProtocolError("Overflow in read_varlong()")
            bit = 1 << (8 - extra)
            buf[min_bytes - 1:min_bytes - 1 + extra] = self.read_bytes(extra)
            buf[min_bytes + extra - 1] = b2[0] & (bit - 1)
        else:
            buf[min_bytes + extra - 1] = b2[0]

        return int.from_bytes(bytes(buf[:8]), 'little', signed=True)

    def read_vbytes(self) -> bytes:
        length = self.read_varint()
        if length < 0:
            raise ProtocolError(f"Negative length prefix: {length}")
        return self.read_bytes(length)

    def read_vstring(self) -> str:
        return self.read_vbytes().decode("utf-8", errors="surrogateescape")

    def read_count(self) -> int:
        count = self.read_varint()
        if count < 0:
            raise ProtocolError(f"Negative element count: {count}")
        return count

    def expect_end(self) -> None:
        if self.remaining:
            raise ProtocolError(f"{self.remaining} trailing bytes after node data")


def _check_version(reader: NodeReader) -> None:
    version = reader.read_varint()
    if version != NODE_CODEC_VERSION:
        raise VersionMismatchError(NODE_CODEC_VERSION, version)


def encode_block(block: Block) -> bytes:
    w = NodeWriter()
    w.write_varint(NODE_CODEC_VERSION)
    w.write_varint(block.position)
    w.write_uint(block.weak)
    w.write_vbytes(block.strong)
    return w.getvalue()


def decode_block(data: bytes, into: Optional[Block] = None) -> Block:
    """
    Decode a Block blob, optionally into an existing Block.

    Raises:
        VersionMismatchError: Before any field is read; ``into`` is untouched
        ProtocolError: On truncated or trailing data; ``into`` is untouched
    """
    r = NodeReader(data)
    _check_version(r)
    position = r.read_varint()
    weak = r.read_uint()
    strong = r.read_vbytes()
    r.expect_end()

    block = into if into is not None else Block()
    block.position = position
    block.weak = weak
    block.strong = strong
    return block


def encode_file(file: File) -> bytes:
    w = NodeWriter()
    w.write_varint(NODE_CODEC_VERSION)
    w.write_vstring(file.name)
    w.write_varint(file.mode)
    w.write_vbytes(file.strong)
    w.write_varlong(file.size, _SIZE_MIN_BYTES)
    w.write_varint(len(file.blocks))
    for block in file.blocks:
        w.write_vbytes(encode_block(block))
    return w.getvalue()


def decode_file(data: bytes, into: Optional[File] = None) -> File:
    """
    Decode a File blob and its Blocks, then point each Block at the File.

    Raises:
        VersionMismatchError: Before any field is read; ``into`` is untouched
        ProtocolError: On malformed data; ``into`` is untouched
    """
    r = NodeReader(data)
    _check_version(r)
    name = r.read_vstring()
    mode = r.read_varint()
    strong = r.read_vbytes()
    size = r.read_varlong(_SIZE_MIN_BYTES)
    blocks = [decode_block(r.read_vbytes()) for _ in range(r.read_count())]
    r.expect_end()

    file = into if into is not None else File()
    file.name = name
    file.mode = mode
    file.strong = strong
    file.size = size
    file._adopt(blocks)
    return file


def encode_dir(directory: Dir) -> bytes:
    w = NodeWriter()
    w.write_varint(NODE_CODEC_VERSION)
    w.write_vstring(directory.name)
    w.write_varint(directory.mode)
    w.write_vbytes(directory.strong)
    w.write_varint(len(directory.subdirs))
    for subdir in directory.subdirs.values():
        w.write_vbytes(encode_dir(subdir))
    w.write_varint(len(directory.files))
    for file in directory.files.values():
        w.write_vbytes(encode_file(file))
    return w.getvalue()


def decode_dir(data: bytes, into: Optional[Dir] = None) -> Dir:
    """
    Decode a Dir blob recursively, then point each child at the Dir.

    Raises:
        VersionMismatchError: Before any field is read; ``into`` is untouched
        ProtocolError: On malformed data; ``into`` is untouched
    """
    r = NodeReader(data)
    _check_version(r)
    name = r.read_vstring()
    mode = r.read_varint()
    strong = r.read_vbytes()

    subdirs: Dict[str, Dir] = {}
    for _ in range(r.read_count()):
        subdir = decode_dir(r.read_vbytes())
        subdirs[subdir.name] = subdir

    files: Dict[str, File] = {}
    for _ in range(r.read_count()):
        file = decode_file(r.read_vbytes())
        files[file.name] = file
    r.expect_end()

    directory = into if into is not None else Dir()
    directory.name = name
    directory.mode = mode
    directory.strong = strong
    directory._adopt(subdirs, files)
    return directory


_ENCODERS: Dict[NodeKind, Callable[[Any], bytes]] = {
    NodeKind.BLOCK: encode_block,
    NodeKind.FILE: encode_file,
    NodeKind.DIR: encode_dir,
}

_DECODERS: Dict[NodeKind, Callable[[bytes], Node]] = {
    NodeKind.BLOCK: decode_block,
    NodeKind.FILE: decode_file,
    NodeKind.DIR: decode_dir,
}


def encode_node(node: Node) -> bytes:
    """Kind byte followed by the node's own blob."""
    return bytes([node.kind]) + _ENCODERS[node.kind](node)


def decode_node(data: bytes) -> Node:
    """Decode a blob produced by encode_node()."""
    if not data:
        raise ProtocolError("Empty node data")
    try:
        kind = NodeKind(data[0])
    except ValueError:
        raise ProtocolError(f"Unknown node kind: {data[0]}") from None
    return _DECODERS[kind](data[1:])


# ============================================================================
# INDEX CACHE - Compressed on-disk copies of an index tree
# ============================================================================

class CompressionRegistry:
    """
    Compression algorithms for index cache payloads.

    zlib ships with Python; lz4 and zstandard come from their packages.
    """
    _zstd_compressors: Dict[int, Any] = {}
    _zstd_decompressor: Any = None

    @classmethod
    def compress(cls, data: bytes, comp_type: CompressionType,
                 level: Optional[int] = None) -> bytes:
        """
        Compress data using specified algorithm.

        Raises:
            ValueError: If compression type is not supported
        """
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.compress(data, level)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level))
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, cls._get_zstd_compressor(level).compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def decompress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        """
        Decompress data using specified algorithm.

        Raises:
            ValueError: If compression type is not supported
        """
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.decompress(data)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, cls._get_zstd_decompressor().decompress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def _get_zstd_compressor(cls, level: int) -> Any:
        if level not in cls._zstd_compressors:
            cls._zstd_compressors[level] = _zstandard.ZstdCompressor(level=level)
        return cls._zstd_compressors[level]

    @classmethod
    def _get_zstd_decompressor(cls) -> Any:
        if cls._zstd_decompressor is None:
            cls._zstd_decompressor = _zstandard.ZstdDecompressor()
        return cls._zstd_decompressor

    @classmethod
    def get_compression_level(cls, comp_type: CompressionType) -> int:
        """Get default compression level for algorithm."""
        levels = {
            CompressionType.NONE: 0,
            CompressionType.ZLIB: 6,
            CompressionType.LZ4: 1,   # lz4 uses 0-12, 1 is fast
            CompressionType.ZSTD: 3,  # zstd uses 1-22, 3 is balanced
        }
        return levels.get(comp_type, 6)


def save_index(root: Node, path: Union[str, os.PathLike],
               compression: Optional[CompressionType] = None,
               level: Optional[int] = None) -> int:
    """
    Write an index tree to a cache file.

    Layout: ``RPIX``, format byte, compression code, xxh64 of the
    uncompressed payload, then the compressed ``encode_node(root)``.
    The file is written next to its destination and renamed into place.

    Returns:
        Size of the cache file in bytes
    """
    comp_type = compression or Config.INDEX_COMPRESSION
    payload = encode_node(root)
    body = CompressionRegistry.compress(payload, comp_type, level)
    header = _INDEX_CACHE_HEADER.pack(
        INDEX_CACHE_MAGIC, INDEX_CACHE_FORMAT, _COMPRESSION_CODES[comp_type],
        xxhash.xxh64(payload).digest(),
    )

    target = os.fspath(path)
    fd, tmp_path = tempfile.mkstemp(prefix=".", suffix=".tmp",
                                    dir=os.path.dirname(os.path.abspath(target)))
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(header)
            fh.write(body)
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    written = len(header) + len(body)
    logger.info(
        f"Saved index cache {target}: {format_size(len(payload))} -> "
        f"{format_size(written)} ({comp_type.value})"
    )
    return written


def load_index(path: Union[str, os.PathLike]) -> Node:
    """
    Read an index tree from a cache file written by save_index().

    Raises:
        ProtocolError: Bad magic, unknown format or compression code, bad node data
        DataIntegrityError: Payload digest does not match the header
    """
    target = os.fspath(path)
    with open(target, 'rb') as fh:
        data = fh.read()

    if len(data) < _INDEX_CACHE_HEADER.size:
        raise ProtocolError(f"Index cache {target} is truncated")
    magic, fmt, code, digest = _INDEX_CACHE_HEADER.unpack_from(data)
    if magic != INDEX_CACHE_MAGIC:
        raise ProtocolError(f"{target} is not an index cache file")
    if fmt != INDEX_CACHE_FORMAT:
        raise ProtocolError(f"Unsupported index cache format {fmt} in {target}")

    comp_types = {v: k for k, v in _COMPRESSION_CODES.items()}
    if code not in comp_types:
        raise ProtocolError(f"Unknown compression code {code} in {target}")

    try:
        payload = CompressionRegistry.decompress(data[_INDEX_CACHE_HEADER.size:], comp_types[code])
    except Exception as e:
        raise DataIntegrityError(f"Cannot decompress index cache {target}: {e}") from e

    if xxhash.xxh64(payload).digest() != digest:
        raise DataIntegrityError(f"Index cache {target} failed digest verification")

    root = decode_node(payload)
    logger.info(f"Loaded index cache {target}")
    return root
