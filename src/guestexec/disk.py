"""Grow or shrink a filesystem image to an exact size.

The sizer only moves the end of the filesystem. It scans the allocation log
for the free run that reaches the current end and never relocates data, so a
free island bracketed by allocated blocks is left in place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .errors import FilesystemError
from .filesystem import FileSystem, FilesystemLibrary, FreeExtent, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiskLayout:
    """Block accounting of one open filesystem image."""

    block_size: int
    block_count: int
    reserved_blocks: int
    disk_size: int
    free_extents: tuple[FreeExtent, ...]

    @property
    def reserved_size(self) -> int:
        return self.reserved_blocks * self.block_size

    @property
    def size(self) -> int:
        return self.block_count * self.block_size

    @property
    def last_free(self) -> FreeExtent | None:
        """The contiguous free run ending at the last block, if any."""
        return trailing_free_run(self.free_extents, self.block_count)

    @property
    def min_size(self) -> int:
        last_free = self.last_free
        if last_free is None:
            return self.size
        return last_free.index * self.block_size

    @property
    def max_size(self) -> int:
        return self.disk_size - self.reserved_size


def trailing_free_run(extents: Iterable[FreeExtent], end_block: int) -> FreeExtent | None:
    """Merge ``extents`` and return the free run that ends at ``end_block``."""
    last_free: FreeExtent | None = None
    last_end = -1
    for extent in sorted(extents, key=lambda item: item.index):
        if extent.count <= 0 or extent.index >= end_block:
            continue
        if last_free is not None and extent.index <= last_end:
            end = max(last_end, extent.end)
            last_free = FreeExtent(last_free.index, end - last_free.index)
        else:
            last_free = extent
        last_end = last_free.end
    if last_free is None or last_end < end_block:
        return None
    return FreeExtent(last_free.index, end_block - last_free.index)


def read_layout(fs: FileSystem, tx: Transaction) -> DiskLayout:
    try:
        extents = tuple(tx.free_extents())
    except OSError as exc:
        raise FilesystemError(f"could not read allocation log: {exc}") from exc
    return DiskLayout(
        block_size=fs.block_size,
        block_count=tx.header_size // fs.block_size,
        reserved_blocks=fs.reserved_blocks,
        disk_size=fs.disk_size(),
        free_extents=extents,
    )


def resize(fs: FileSystem, tx: Transaction, layout: DiskLayout, new_size: int) -> int:
    """Move the end of the filesystem to ``new_size`` bytes and return it.

    The backing file is truncated or extended only after the transaction
    commits.
    """
    old_blocks = layout.block_count
    new_blocks = new_size // layout.block_size
    if new_blocks == old_blocks:
        logger.debug("filesystem already %d blocks", old_blocks)
        return layout.size

    if new_blocks < old_blocks:
        for block in range(new_blocks, old_blocks):
            if not tx.allocate_at(block):
                raise FilesystemError(
                    f"cannot shrink to {new_blocks} blocks: block {block} is still in use"
                )
    else:
        tx.deallocate(old_blocks, new_blocks - old_blocks)

    tx.header_size = new_blocks * layout.block_size
    try:
        tx.commit(squash=True)
    except OSError as exc:
        raise FilesystemError(f"could not commit resize transaction: {exc}") from exc

    try:
        fs.set_disk_size((layout.reserved_blocks + new_blocks) * layout.block_size)
    except OSError as exc:
        raise FilesystemError(f"could not resize backing file: {exc}") from exc

    logger.info("resized filesystem from %d to %d blocks", old_blocks, new_blocks)
    return new_blocks * layout.block_size


class DiskSizer:
    """Shrink and expand images opened through a filesystem library."""

    def __init__(self, library: FilesystemLibrary):
        self.library = library

    def layout(self, image: Path) -> DiskLayout:
        fs = self._open(image)
        try:
            with fs.transaction() as tx:
                return read_layout(fs, tx)
        finally:
            fs.close()

    def shrink(self, image: Path) -> int:
        """Cut the trailing free run off ``image``; return the new filesystem size."""
        fs = self._open(image)
        try:
            with fs.transaction() as tx:
                layout = read_layout(fs, tx)
                return resize(fs, tx, layout, layout.min_size)
        finally:
            fs.close()

    def expand(self, image: Path, target_size: int) -> int:
        """Grow ``image`` to ``target_size`` bytes and give the new space to the allocator."""
        fs = self._open(image)
        try:
            if fs.disk_size() < target_size:
                try:
                    fs.set_disk_size(target_size)
                except OSError as exc:
                    raise FilesystemError(f"could not grow {image}: {exc}") from exc
            with fs.transaction() as tx:
                layout = read_layout(fs, tx)
                return resize(fs, tx, layout, layout.max_size)
        finally:
            fs.close()

    def _open(self, image: Path) -> FileSystem:
        try:
            return self.library.open(image)
        except OSError as exc:
            raise FilesystemError(f"could not open {image}: {exc}") from exc
