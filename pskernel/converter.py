"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.

Offline converter from sparse block dumps to tab-separated text.

Input files are the dumps written by ``SparseKernelBlock.dump``::

    [int32 dim] ([uint64 key][dim x float32 weight][8 reserved][float32 show])*

They are expected under ``<root>/<table>/rank_<r>/<file>``. Every rank keeps
the files of its own ``rank_<r>`` directory and writes
``<output_dir>/part-<r>`` with one line per record::

    key<TAB>table<TAB>w0<TAB>...<TAB>w(dim-1)<TAB>show
"""

import argparse
import logging
import sys
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch.distributed as dist
from tqdm import tqdm

from pskernel.codec import F32, FLOAT_SIZE, ByteSource
from pskernel.configs import get_envs
from pskernel.errors import (
    ConversionError,
    DecodeError,
    PSKernelError,
    UnsupportedModeError,
)
from pskernel.misc import measure

logger = logging.getLogger(__name__)

# g2sum and version, not exported
RESERVED_BYTES = 8

MODES = ("AdaGrad", "Adam")


def list_files(path: str) -> List[str]:
    """All regular files below ``path``, sorted."""
    if not Path(path).exists():
        raise ConversionError(path, "input path does not exist")
    files = []
    pending = deque([path.rstrip("/") or "/"])
    while pending:
        current = pending.popleft()
        try:
            children = sorted(p.name for p in Path(current).iterdir())
        except OSError as e:
            raise ConversionError(current, "cannot list directory", e)
        for name in children:
            child = f"{current}/{name}"
            if Path(child).is_dir():
                pending.append(child)
            else:
                files.append(child)
    files.sort()
    return files


def table_handle(path: str) -> str:
    parts = path.split("/")
    if len(parts) < 3 or not parts[-3]:
        raise ConversionError(path, "cannot derive table handle from path")
    return parts[-3]


def format_float(value) -> str:
    """Shortest decimal that reads back as the same float32."""
    return str(np.float32(value))


def _read_bytes(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ConversionError(path, "read failed", e)


def parse_adagrad_params(path: str, lines: List[str]) -> int:
    """Append one text line per record of ``path``; returns the record count."""
    data = _read_bytes(path)
    if not data:
        logger.info("file [%s] is empty", path)
        return 0

    handle = table_handle(path)
    source = ByteSource(data)
    count = 0
    try:
        dim = source.read_i32()
        if dim < 0:
            raise ConversionError(path, f"negative dimension {dim}")
        while not source.exhausted:
            key = source.read_u64()
            weight = np.frombuffer(source.read(dim * FLOAT_SIZE), dtype=F32)
            source.skip(RESERVED_BYTES)
            show = source.read_f32()
            fields = [str(key), handle]
            fields.extend(format_float(w) for w in weight)
            fields.append(format_float(show))
            lines.append("\t".join(fields) + "\n")
            count += 1
    except DecodeError as e:
        raise ConversionError(
            path, f"truncated record after {count} records: {e}", e
        )
    return count


PARSERS: Dict[str, Callable[[str, List[str]], int]] = {
    "AdaGrad": parse_adagrad_params,
}


def convert(
    files: Sequence[str], out_file: str, parse_mode: str, rank: int
) -> int:
    """Convert this rank's files into ``out_file``; returns the record count."""
    if parse_mode == "Adam":
        raise UnsupportedModeError("Adam dumps are not supported yet")
    parser = PARSERS.get(parse_mode, None)
    if parser is None:
        raise ValueError(
            f"Unknown parse mode: {parse_mode}, allowed: {list(PARSERS.keys())}"
        )
    flag = f"/rank_{rank}/"
    own_files = [f for f in files if flag in f]
    lines: List[str] = []
    total = 0
    for file in tqdm(own_files, desc=f"rank {rank}", disable=not own_files):
        with measure(f"file [{file}]", log=logger):
            total += parser(file, lines)

    try:
        Path(out_file).parent.mkdir(parents=True, exist_ok=True)
        with open(out_file, "w", encoding="utf-8") as f:
            f.writelines(lines)
    except OSError as e:
        raise ConversionError(out_file, "write failed", e)
    logger.info(
        "wrote %d records from %d files to %s", total, len(own_files), out_file
    )
    return total


def init_distributed() -> Tuple[int, int]:
    """Join the process group described by RANK/WORLD_SIZE, if any."""
    envs = get_envs(["RANK", "WORLD_SIZE"], ignore=True)
    world_size = int(envs["WORLD_SIZE"] or 1)
    if world_size > 1 and dist.is_available() and not dist.is_initialized():
        dist.init_process_group(backend="gloo")
    if dist.is_available() and dist.is_initialized():
        return dist.get_rank(), dist.get_world_size()
    return int(envs["RANK"] or 0), world_size


def barrier() -> None:
    if dist.is_available() and dist.is_initialized():
        dist.barrier()


def shutdown_distributed() -> None:
    if dist.is_available() and dist.is_initialized():
        dist.destroy_process_group()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert sparse AdaGrad dumps to tab-separated text"
    )
    parser.add_argument("input_path", type=str, help="Root of the dump tree")
    parser.add_argument(
        "output_dir", type=str, help="Directory receiving part-<rank> files"
    )
    parser.add_argument("mode", choices=MODES, help="Optimizer of the dump")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        rank, world_size = init_distributed()
        files = list_files(args.input_path)
        out_file = f"{args.output_dir}/part-{rank}"
        logger.info(
            "rank %d/%d converting %s -> %s",
            rank,
            world_size,
            args.input_path,
            out_file,
        )
        convert(files, out_file, args.mode, rank)
    except PSKernelError as e:
        logger.error("Convert failed: %s", e)
        shutdown_distributed()
        return 1
    barrier()
    shutdown_distributed()
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
