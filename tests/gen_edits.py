#!/usr/bin/env python3
"""
Generate an original/modified file pair with scattered byte substitutions.

Arguments:
  size             File size in bytes
  num_edits        Number of distinct offsets to change (<= size)
  [orig_path]      Original output file  (default: orig.bin)
  [mod_path]       Modified output file  (default: mod.bin)

Usage:
  python gen_edits.py 65536 100
  python gen_edits.py 1048576 5000 save.dat save-edited.dat
"""

import os
import random
import sys

# Files above this size are written in chunks from os.urandom.
_CHUNK = 8 * 1024 * 1024


def _gen_offsets(rng, size, k):
    """Return k distinct offsets in [0, size), sorted."""
    return sorted(rng.sample(range(size), k))


def _write_original(path, size, rng):
    with open(path, 'wb') as f:
        if size <= _CHUNK:
            f.write(bytes(rng.getrandbits(8) for _ in range(size)))
            return
        remaining = size
        while remaining:
            n = min(_CHUNK, remaining)
            f.write(os.urandom(n))
            remaining -= n


def _write_modified(orig_path, mod_path, offsets, rng):
    """Copy orig_path to mod_path, then flip each offset to a different byte."""
    with open(orig_path, 'rb') as src, open(mod_path, 'wb') as dst:
        while True:
            chunk = src.read(_CHUNK)
            if not chunk:
                break
            dst.write(chunk)
    with open(orig_path, 'rb') as src, open(mod_path, 'r+b') as dst:
        for off in offsets:
            src.seek(off)
            old = src.read(1)[0]
            dst.seek(off)
            # non-zero xor guarantees a real difference
            dst.write(bytes((old ^ rng.randint(1, 255),)))


def main():
    if len(sys.argv) < 3:
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(1)

    size      = int(sys.argv[1])
    num_edits = int(sys.argv[2])
    orig_path = sys.argv[3] if len(sys.argv) > 3 else "orig.bin"
    mod_path  = sys.argv[4] if len(sys.argv) > 4 else "mod.bin"

    if not (0 <= num_edits <= size):
        sys.exit("num_edits must be between 0 and size")

    os.makedirs(os.path.dirname(os.path.abspath(orig_path)), exist_ok=True)

    rng = random.Random(42)
    offsets = _gen_offsets(rng, size, num_edits)
    _write_original(orig_path, size, rng)
    _write_modified(orig_path, mod_path, offsets, rng)

    print(f"size:       {size:,} bytes")
    print(f"edits:      {num_edits:,}")
    print(f"orig:       {orig_path}")
    print(f"mod:        {mod_path}")


if __name__ == "__main__":
    main()
