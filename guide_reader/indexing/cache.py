"""
Bounded window cache over the index store.

Lines are cached in fixed-size blocks keyed by (guide, version, block index).
The reading surface pulls windows with `get_window`; blocks covering the window
are fetched synchronously on a miss, blocks in the surrounding margin are
prefetched on a thread pool. Resident lines and bytes never exceed the
configured ceilings, whatever the document length.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from .errors import GuideIndexError
from .store import IndexStore

if TYPE_CHECKING:
    from .position import PositionTracker

logger = logging.getLogger(__name__)

BlockKey = Tuple[str, int, int]


@dataclass(frozen=True)
class CacheConfig:
    block_lines: int = 128
    max_bytes: int = 256 * 1024
    max_lines: int = 4096
    prefetch_blocks: int = 2
    prefetch_workers: int = 2


class _Block:
    __slots__ = ("key", "start", "lines", "byte_size", "refs")

    def __init__(self, key: BlockKey, start: int, lines: List[str], byte_size: int):
        self.key = key
        self.start = start
        self.lines = lines
        self.byte_size = byte_size
        self.refs = 0

    @property
    def stop(self) -> int:
        return self.start + len(self.lines)


class Window:
    """
    A contiguous run of lines from one guide version. The window keeps its
    version pinned in the store, and its blocks resident in the cache, until
    `release` is called (or the `with` block exits).
    """

    def __init__(
        self,
        cache: "WindowCache",
        guide_id: str,
        version: int,
        start: int,
        lines: List[str],
        line_count: int,
        blocks: List[_Block],
    ):
        self.guide_id = guide_id
        self.version = version
        self.start = start
        self.lines = lines
        self.line_count = line_count
        self._cache = cache
        self._blocks = blocks
        self._released = False

    @property
    def end(self) -> int:
        return self.start + len(self.lines)

    @property
    def released(self) -> bool:
        return self._released

    def __len__(self) -> int:
        return len(self.lines)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._cache._release_window(self, self._blocks)
        self._blocks = []

    def __enter__(self) -> "Window":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class WindowCache:
    def __init__(
        self,
        store: IndexStore,
        config: CacheConfig = CacheConfig(),
        positions: Optional["PositionTracker"] = None,
    ):
        if config.block_lines <= 0:
            raise ValueError("block_lines must be positive")
        self.store = store
        self.config = config
        self.positions = positions
        self._lock = threading.RLock()
        self._blocks: "OrderedDict[BlockKey, _Block]" = OrderedDict()
        self._resident_lines = 0
        self._resident_bytes = 0
        self._open_windows: Dict[str, int] = {}
        self._wanted: Dict[str, Set[BlockKey]] = {}
        self._prefetch: Dict[BlockKey, Future] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.prefetch_workers), thread_name_prefix="window-prefetch"
        )
        self._closed = False

    @property
    def resident_lines(self) -> int:
        return self._resident_lines

    @property
    def resident_bytes(self) -> int:
        return self._resident_bytes

    def contains(self, guide_id: str, version: int, line: int) -> bool:
        """True if the block holding `line` is resident."""
        with self._lock:
            return (guide_id, version, line // self.config.block_lines) in self._blocks

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "blocks": len(self._blocks),
                "lines": self._resident_lines,
                "bytes": self._resident_bytes,
                "pending_prefetches": len(self._prefetch),
                "open_windows": sum(self._open_windows.values()),
            }

    def get_window(self, guide_id: str, center_line: int, radius: int, version: Optional[int] = None) -> Window:
        """
        Lines `[center - radius, center + radius]` clamped to the version's
        bounds. Without an explicit version the guide's current version is used.
        """
        if radius < 0:
            raise ValueError("radius must not be negative")
        if self._closed:
            raise RuntimeError("Window cache is closed")
        if version is None:
            version = self.store.current_version(guide_id)
        self.store.pin(guide_id, version)

        held: List[_Block] = []
        try:
            if self.positions is not None:
                # Loads a stored position here so eviction never reads storage.
                self.positions.peek(guide_id)
            record = self.store.get_version(guide_id, version)
            line_count = record.line_count
            center = min(max(center_line, 0), line_count - 1)
            start = max(0, center - radius)
            end = min(line_count, center + radius + 1)
            size = self.config.block_lines
            first_block, last_block = start // size, (end - 1) // size
            margin = self._margin(first_block, last_block, line_count)
            self._supersede(
                guide_id,
                {(guide_id, version, index) for index in range(first_block, last_block + 1)}
                | {(guide_id, version, index) for index in margin},
            )

            lines: List[str] = []
            for index in range(first_block, last_block + 1):
                block, retained = self._get_block((guide_id, version, index), line_count, record.encoding)
                if retained:
                    held.append(block)
                lo = max(start, block.start) - block.start
                hi = min(end, block.stop) - block.start
                lines.extend(block.lines[lo:hi])

            with self._lock:
                self._open_windows[guide_id] = self._open_windows.get(guide_id, 0) + 1
        except BaseException:
            self._unhold(held)
            self.store.release(guide_id, version)
            raise

        self._schedule_prefetch(guide_id, version, margin, line_count, record.encoding)
        return Window(self, guide_id, version, start, lines, line_count, held)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight prefetches to finish."""
        with self._lock:
            pending = list(self._prefetch.values())
        wait(pending, timeout=timeout)

    def invalidate(self, guide_id: str) -> int:
        """
        Drop every cached block and pending prefetch of a guide. Open windows
        keep the lines they already hold.
        """
        with self._lock:
            self._wanted.pop(guide_id, None)
            for key in [k for k in self._prefetch if k[0] == guide_id]:
                self._prefetch.pop(key).cancel()
            removed = [k for k in self._blocks if k[0] == guide_id]
            for key in removed:
                self._drop(key)
            return len(removed)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for future in self._prefetch.values():
                future.cancel()
            self._prefetch.clear()
            self._wanted.clear()
        self._executor.shutdown(wait=True, cancel_futures=True)
        with self._lock:
            self._blocks.clear()
            self._resident_lines = 0
            self._resident_bytes = 0

    # region Blocks
    def _block_range(self, index: int, line_count: int) -> Tuple[int, int]:
        start = index * self.config.block_lines
        return start, min(start + self.config.block_lines, line_count)

    def _margin(self, first_block: int, last_block: int, line_count: int) -> List[int]:
        reach = self.config.prefetch_blocks
        if reach <= 0:
            return []
        total_blocks = (line_count + self.config.block_lines - 1) // self.config.block_lines
        lo = max(0, first_block - reach)
        hi = min(total_blocks - 1, last_block + reach)
        return [i for i in range(lo, hi + 1) if i < first_block or i > last_block]

    def _fetch(self, key: BlockKey, line_count: int, encoding: str) -> _Block:
        guide_id, version, index = key
        start, stop = self._block_range(index, line_count)
        lines = self.store.get_line_range(guide_id, version, start, stop)
        byte_size = sum(len(line.encode(encoding)) for line in lines)
        return _Block(key, start, lines, byte_size)

    def _get_block(self, key: BlockKey, line_count: int, encoding: str) -> Tuple[_Block, bool]:
        with self._lock:
            block = self._blocks.get(key)
            if block is not None:
                self._blocks.move_to_end(key)
                block.refs += 1
                return block, True

        block = self._fetch(key, line_count, encoding)
        with self._lock:
            existing = self._blocks.get(key)
            if existing is not None:
                self._blocks.move_to_end(key)
                existing.refs += 1
                return existing, True
            retained = self._insert(block)
            if retained:
                block.refs += 1
            return block, retained

    def _insert(self, block: _Block) -> bool:
        # Caller holds the lock.
        lines_needed = len(block.lines)
        if lines_needed > self.config.max_lines or block.byte_size > self.config.max_bytes:
            return False
        self._evict_for(lines_needed, block.byte_size)
        if (
            self._resident_lines + lines_needed > self.config.max_lines
            or self._resident_bytes + block.byte_size > self.config.max_bytes
        ):
            return False
        self._blocks[block.key] = block
        self._resident_lines += lines_needed
        self._resident_bytes += block.byte_size
        return True

    def _evict_for(self, lines_needed: int, bytes_needed: int) -> None:
        for key in list(self._blocks):
            if (
                self._resident_lines + lines_needed <= self.config.max_lines
                and self._resident_bytes + bytes_needed <= self.config.max_bytes
            ):
                return
            block = self._blocks[key]
            if block.refs > 0 or self._protected(block):
                continue
            self._drop(key)

    def _protected(self, block: _Block) -> bool:
        guide_id = block.key[0]
        if self.positions is None or not self._open_windows.get(guide_id):
            return False
        position = self.positions.peek(guide_id)
        return position is not None and block.start <= position.line_number < block.stop

    def _drop(self, key: BlockKey) -> None:
        block = self._blocks.pop(key)
        self._resident_lines -= len(block.lines)
        self._resident_bytes -= block.byte_size

    def _unhold(self, blocks: List[_Block]) -> None:
        with self._lock:
            for block in blocks:
                block.refs = max(0, block.refs - 1)

    def _release_window(self, window: Window, blocks: List[_Block]) -> None:
        self._unhold(blocks)
        with self._lock:
            remaining = self._open_windows.get(window.guide_id, 0) - 1
            if remaining > 0:
                self._open_windows[window.guide_id] = remaining
            else:
                self._open_windows.pop(window.guide_id, None)
        self.store.release(window.guide_id, window.version)

    # endregion

    # region Prefetch
    def _supersede(self, guide_id: str, wanted: Set[BlockKey]) -> None:
        with self._lock:
            self._wanted[guide_id] = wanted
            stale = [k for k in self._prefetch if k[0] == guide_id and k not in wanted]
            for key in stale:
                self._prefetch.pop(key).cancel()
        if stale:
            logger.debug("Cancelled %s superseded prefetch(es) for %s", len(stale), guide_id)

    def _schedule_prefetch(self, guide_id: str, version: int, margin: List[int], line_count: int, encoding: str) -> None:
        with self._lock:
            if self._closed:
                return
            for index in margin:
                key = (guide_id, version, index)
                if key in self._blocks or key in self._prefetch:
                    continue
                future = self._executor.submit(self._prefetch_block, key, line_count, encoding)
                self._prefetch[key] = future
                future.add_done_callback(lambda f, key=key: self._prefetch_done(key, f))

    def _is_wanted(self, key: BlockKey) -> bool:
        return not self._closed and key in self._wanted.get(key[0], ())

    def _prefetch_block(self, key: BlockKey, line_count: int, encoding: str) -> bool:
        with self._lock:
            if not self._is_wanted(key) or key in self._blocks:
                return False
        guide_id, version, _ = key
        self.store.pin(guide_id, version)
        try:
            block = self._fetch(key, line_count, encoding)
        finally:
            self.store.release(guide_id, version)
        with self._lock:
            if not self._is_wanted(key) or key in self._blocks:
                logger.debug("Discarding late prefetch of %s", key)
                return False
            return self._insert(block)

    def _prefetch_done(self, key: BlockKey, future: Future) -> None:
        with self._lock:
            if self._prefetch.get(key) is future:
                self._prefetch.pop(key)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            level = logging.DEBUG if isinstance(error, GuideIndexError) else logging.WARNING
            logger.log(level, "Prefetch of %s failed: %s", key, error)

    # endregion
