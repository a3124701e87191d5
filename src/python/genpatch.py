#!/usr/bin/env python3
"""
Byte-Substitution Patches

Generates and applies patches between two same-length versions of a file.
A patch lists every offset where the files differ, with the original and
modified byte values, and records the SHA-256 digest of the original so the
patch is only ever applied to the base file it was made from.

Patch format (text):
  PATCH FILE
  Original File Hash: <64 hex chars>
  --------------------------------------------------
  Offset: <uint>, Original Byte: <0-255>, Modified Byte: <0-255>
  ...

Usage:
  python genpatch.py generate <original> <modified> <patch>
  python genpatch.py apply    <target> <patch> [-o output] [--in-place]
  python genpatch.py info     <patch>
"""

import argparse
import hashlib
import os
import re
import shutil
import stat
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Iterable, Iterator, Optional, Tuple

try:
    import fcntl
except ImportError:  # Windows: no advisory locking
    fcntl = None


CHUNK_SIZE = 4096
DIGEST_SIZE = 32            # SHA-256


@dataclass
class PatchOptions:
    """Options threaded through generation and application."""
    verbose: bool = False
    chunk_size: int = CHUNK_SIZE
    atomic: bool = True     # apply via temp copy + rename

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")


# ============================================================================
# Errors
# ============================================================================

class PatchError(Exception):
    """Base class for patch generation/application failures."""


class MalformedPatchError(PatchError):
    """Patch file is missing header lines or has an unparseable data line."""

    def __init__(self, path, line_number: int, reason: str):
        self.path = str(path)
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"{self.path}:{line_number}: {reason}")


class DigestMismatchError(PatchError):
    """Candidate base file does not match the digest recorded in the patch."""

    def __init__(self, path, expected: bytes, actual: bytes):
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{self.path} does not match patch: "
            f"expected {expected.hex()}, got {actual.hex()}")


class LengthMismatchError(PatchError):
    """Original and modified files differ in length."""

    def __init__(self, original, modified, offset: int):
        self.original = str(original)
        self.modified = str(modified)
        self.offset = offset
        super().__init__(
            f"{self.original} and {self.modified} differ in length "
            f"(shorter file ends at offset {offset}); "
            f"only same-length substitutions are supported")


class PatchRangeError(PatchError):
    """An edit offset lies beyond the end of the target file."""

    def __init__(self, path, offset: int, size: int):
        self.path = str(path)
        self.offset = offset
        self.size = size
        super().__init__(
            f"edit at offset {offset} lies beyond end of {self.path} "
            f"({size} bytes)")


# ============================================================================
# Records
# ============================================================================

@dataclass
class DiffRecord:
    """One differing byte: original[offset] != modified[offset]."""
    offset: int
    original: int
    modified: int

    def __repr__(self):
        return (f"DIFF(off={self.offset}, "
                f"{self.original:#04x}->{self.modified:#04x})")


@dataclass(frozen=True)
class PatchDocument:
    """Base-file digest plus (offset, modified byte) edits in file order."""
    base_digest: bytes
    edits: Tuple[Tuple[int, int], ...] = field(default_factory=tuple)

    def __len__(self):
        return len(self.edits)


# ============================================================================
# Content Digest
#
# SHA-256 over the whole file, fed incrementally so the file never has to
# fit in memory.  Only compared for equality.
# ============================================================================

def _digest_stream(f: IO[bytes], chunk_size: int = CHUNK_SIZE) -> bytes:
    h = hashlib.sha256()
    while True:
        chunk = f.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
    return h.digest()


def file_digest(path, opts: Optional[PatchOptions] = None) -> bytes:
    """Return the SHA-256 digest (DIGEST_SIZE bytes) of the file at path."""
    opts = opts or PatchOptions()
    with open(path, 'rb') as f:
        return _digest_stream(f, opts.chunk_size)


# ============================================================================
# Diff Encoder
#
# Walks both files in lockstep and yields a DiffRecord at every offset where
# the bytes disagree.  Reads are batched; identical blocks are skipped with
# a single comparison, so the output is exactly that of a byte-at-a-time
# walk.  A length difference raises LengthMismatchError once every
# difference in the common prefix has been yielded.
# ============================================================================

def diff_files(original, modified,
               opts: Optional[PatchOptions] = None) -> Iterator[DiffRecord]:
    """Yield DiffRecords for original vs modified in increasing offset order."""
    opts = opts or PatchOptions()
    n = opts.chunk_size
    with open(original, 'rb') as fa, open(modified, 'rb') as fb:
        offset = 0
        while True:
            a = fa.read(n)
            b = fb.read(n)
            if not a and not b:
                return
            if a != b:
                for i, (x, y) in enumerate(zip(a, b)):
                    if x != y:
                        yield DiffRecord(offset + i, x, y)
            if len(a) != len(b):
                raise LengthMismatchError(original, modified,
                                          offset + min(len(a), len(b)))
            offset += len(a)


# ============================================================================
# Patch Format
#
# Line-oriented text.  Byte values are written unsigned (0-255).  The reader
# also accepts -128..-1, the signed-char values produced by older writers,
# and folds them into 128..255.  Duplicate offsets are rejected.
# ============================================================================

PATCH_MAGIC = "PATCH FILE"
PATCH_HASH_LABEL = "Original File Hash"
PATCH_SEPARATOR = "-" * 50
PATCH_FIELDS = ("Offset", "Original Byte", "Modified Byte")
PATCH_HEADER_LINES = 3

_INT_RE = re.compile(r'-?[0-9]+')
_HEX_DIGEST_RE = re.compile(r'[0-9a-fA-F]{%d}' % (2 * DIGEST_SIZE))


def format_record(rec: DiffRecord) -> str:
    """Render one record as a patch data line (no trailing newline)."""
    return (f"{PATCH_FIELDS[0]}: {rec.offset}, "
            f"{PATCH_FIELDS[1]}: {rec.original}, "
            f"{PATCH_FIELDS[2]}: {rec.modified}")


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"not a decimal integer: {text!r}")
    return int(text)


def _parse_byte(text: str) -> int:
    v = _parse_int(text)
    if not -128 <= v <= 255:
        raise ValueError(f"byte value {v} out of range")
    return v & 0xFF


def parse_record(line: str) -> DiffRecord:
    """Parse a patch data line.  Raises ValueError on any malformation."""
    parts = line.split(',')
    if len(parts) != len(PATCH_FIELDS):
        raise ValueError(f"expected {len(PATCH_FIELDS)} comma-separated "
                         f"fields, got {len(parts)}")
    values = []
    for part, label in zip(parts, PATCH_FIELDS):
        name, sep, value = part.partition(':')
        if not sep or name.strip() != label:
            raise ValueError(f"expected '{label}: <int>', got {part.strip()!r}")
        values.append(value.strip())

    offset = _parse_int(values[0])
    if offset < 0:
        raise ValueError(f"negative offset {offset}")
    return DiffRecord(offset, _parse_byte(values[1]), _parse_byte(values[2]))


def write_patch(path, base_digest: bytes,
                records: Iterable[DiffRecord]) -> int:
    """Write a patch file.  Returns the number of records written.

    records is consumed lazily, so a LengthMismatchError raised by
    diff_files() propagates out of here with the file partially written.
    """
    if len(base_digest) != DIGEST_SIZE:
        raise ValueError(f"digest must be {DIGEST_SIZE} bytes, "
                         f"got {len(base_digest)}")
    count = 0
    with open(path, 'w', encoding='ascii', newline='\n') as f:
        f.write(f"{PATCH_MAGIC}\n")
        f.write(f"{PATCH_HASH_LABEL}: {base_digest.hex()}\n")
        f.write(f"{PATCH_SEPARATOR}\n")
        for rec in records:
            f.write(format_record(rec) + "\n")
            count += 1
    return count


def _parse_digest_line(path, line: str) -> bytes:
    label, sep, value = line.partition(':')
    if not sep or label.strip() != PATCH_HASH_LABEL:
        raise MalformedPatchError(path, 2, f"expected '{PATCH_HASH_LABEL}: "
                                           f"<hex>', got {line!r}")
    value = value.strip()
    if len(value) != 2 * DIGEST_SIZE:
        raise MalformedPatchError(path, 2, f"digest must be {2 * DIGEST_SIZE} "
                                           f"hex chars, got {len(value)}")
    if not _HEX_DIGEST_RE.fullmatch(value):
        raise MalformedPatchError(path, 2, f"digest is not valid hex: {value!r}")
    return bytes.fromhex(value)


def read_patch(path) -> PatchDocument:
    """Parse a patch file into a PatchDocument.

    Raises MalformedPatchError (with the 1-based line number) for a missing
    or wrong header, an unparseable data line, or a repeated offset.
    """
    with open(path, 'r', encoding='ascii', errors='replace') as f:
        lines = [ln.rstrip('\r\n') for ln in f]

    if len(lines) < 1 or lines[0].strip() != PATCH_MAGIC:
        raise MalformedPatchError(path, 1, f"missing '{PATCH_MAGIC}' magic line")
    if len(lines) < 2:
        raise MalformedPatchError(path, 2, "missing original file hash line")
    base_digest = _parse_digest_line(path, lines[1])
    if len(lines) < 3 or lines[2].strip() != PATCH_SEPARATOR:
        raise MalformedPatchError(path, 3, "missing separator line")

    edits = []
    seen = set()
    for lineno, line in enumerate(lines[PATCH_HEADER_LINES:],
                                  start=PATCH_HEADER_LINES + 1):
        if not line.strip():
            continue
        try:
            rec = parse_record(line)
        except ValueError as e:
            raise MalformedPatchError(path, lineno, str(e))
        if rec.offset in seen:
            raise MalformedPatchError(path, lineno,
                                      f"duplicate offset {rec.offset}")
        seen.add(rec.offset)
        edits.append((rec.offset, rec.modified))

    return PatchDocument(base_digest=base_digest, edits=tuple(edits))


# ============================================================================
# Patch Applier
#
# The digest gate runs before anything is written.  In atomic mode the edits
# go into a temporary copy which is fsync'd and renamed over the
# destination, so a failure leaves the destination as it was.  In in-place
# mode the target is edited directly with seek/write.
# ============================================================================

def _same_file(f: IO[bytes], path) -> bool:
    a = os.fstat(f.fileno())
    b = os.stat(path)
    return (a.st_dev, a.st_ino) == (b.st_dev, b.st_ino)


@contextmanager
def _locked(path, mode: str):
    """Open path and hold an exclusive advisory lock while the block runs.

    An atomic apply renames a new file over path while holding the lock on
    the old one, so a waiter re-opens until the file it locked is still the
    one path names.
    """
    while True:
        f = open(path, mode)
        try:
            if fcntl is not None:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            if _same_file(f, path):
                break
        except BaseException:
            f.close()
            raise
        f.close()

    with f:
        try:
            yield f
        finally:
            if fcntl is not None:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def _verify(f: IO[bytes], path, doc: PatchDocument, opts: PatchOptions) -> int:
    """Check digest and edit range on an open handle.  Returns file size."""
    f.seek(0)
    actual = _digest_stream(f, opts.chunk_size)
    if actual != doc.base_digest:
        raise DigestMismatchError(path, doc.base_digest, actual)
    size = f.tell()
    for offset, _ in doc.edits:
        if offset >= size:
            raise PatchRangeError(path, offset, size)
    return size


def _write_edits(f: IO[bytes], edits: Iterable[Tuple[int, int]]) -> int:
    n = 0
    for offset, value in edits:
        f.seek(offset)
        f.write(bytes((value,)))
        n += 1
    f.flush()
    return n


def check_target(target, doc: PatchDocument,
                 opts: Optional[PatchOptions] = None) -> None:
    """Raise DigestMismatchError/PatchRangeError unless doc applies to target."""
    opts = opts or PatchOptions()
    with open(target, 'rb') as f:
        _verify(f, target, doc, opts)


def apply_patch(target, doc: PatchDocument,
                opts: Optional[PatchOptions] = None, output=None) -> int:
    """Apply doc to target.  Returns the number of edits applied.

    If output is given the patched bytes go there and target is left
    untouched; this always uses a temporary copy.  Otherwise a symlinked
    target is resolved and the file it points to is patched.  Atomic mode
    keeps mode and ownership but gives the target a new inode, so other
    hard links keep the old bytes; use atomic=False to patch them too.
    """
    opts = opts or PatchOptions()
    if output is None:
        target = os.path.realpath(target)

    if output is None and not opts.atomic:
        with _locked(target, 'r+b') as f:
            _verify(f, target, doc, opts)
            applied = _write_edits(f, doc.edits)
            os.fsync(f.fileno())
        return applied

    dest = target if output is None else output
    dest_dir = os.path.dirname(os.path.abspath(dest))
    with _locked(target, 'rb') as src:
        _verify(src, target, doc, opts)
        st = os.fstat(src.fileno())
        fd, tmp_path = tempfile.mkstemp(prefix='.genpatch-', dir=dest_dir)
        try:
            with os.fdopen(fd, 'w+b') as tmp:
                src.seek(0)
                shutil.copyfileobj(src, tmp, opts.chunk_size)
                applied = _write_edits(tmp, doc.edits)
                os.fsync(tmp.fileno())
            os.chmod(tmp_path, stat.S_IMODE(st.st_mode))
            if output is None and hasattr(os, 'chown'):
                tmp_st = os.stat(tmp_path)
                if (tmp_st.st_uid, tmp_st.st_gid) != (st.st_uid, st.st_gid):
                    os.chown(tmp_path, st.st_uid, st.st_gid)
            os.replace(tmp_path, dest)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
    return applied


# ============================================================================
# Generation
# ============================================================================

def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def generate_patch(original, modified, patch_path,
                   opts: Optional[PatchOptions] = None) -> int:
    """Diff original against modified and write patch_path.

    Returns the number of records.  With no differences nothing is written
    and 0 is returned; a pre-existing patch_path is left alone.
    """
    opts = opts or PatchOptions()
    size_a = os.path.getsize(original)
    size_b = os.path.getsize(modified)
    if size_a != size_b:
        raise LengthMismatchError(original, modified, min(size_a, size_b))

    base_digest = file_digest(original, opts)
    out_dir = os.path.dirname(os.path.abspath(patch_path))
    fd, tmp_path = tempfile.mkstemp(prefix='.genpatch-', suffix='.patch',
                                    dir=out_dir)
    os.close(fd)
    try:
        count = write_patch(tmp_path, base_digest,
                            diff_files(original, modified, opts))
        if count:
            # mkstemp creates 0600; give the patch the usual umask default
            os.chmod(tmp_path, 0o666 & ~_current_umask())
            os.replace(tmp_path, patch_path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)

    if opts.verbose:
        print(f"  digest: {base_digest.hex()}", file=sys.stderr)
        print(f"  compared {size_a:,} bytes, {count:,} differ", file=sys.stderr)
    return count


# ============================================================================
# CLI
# ============================================================================

def _opts_from_args(args) -> PatchOptions:
    return PatchOptions(verbose=args.verbose,
                        atomic=not getattr(args, 'in_place', False))


def cmd_generate(args):
    opts = _opts_from_args(args)
    count = generate_patch(args.original_file, args.modified_file,
                           args.output_file, opts)
    if not count:
        print("No differences found between the files.")
        return
    if opts.verbose:
        size = os.path.getsize(args.original_file)
        print(f"Patch file generated: {args.output_file}", file=sys.stderr)
        print(f"Bytes written:  {count:,}", file=sys.stderr)
        print(f"Bytes unchanged: {size - count:,}", file=sys.stderr)


def cmd_apply(args):
    opts = _opts_from_args(args)
    doc = read_patch(args.patch_file)
    if args.check:
        check_target(args.target_file, doc, opts)
        print(f"{args.target_file}: matches patch ({len(doc):,} edits)")
        return
    applied = apply_patch(args.target_file, doc, opts, output=args.output)
    if opts.verbose:
        dest = args.output or args.target_file
        mode = "in-place" if not opts.atomic and not args.output else "atomic"
        print(f"Patch applied successfully to: {dest} ({mode})", file=sys.stderr)
        print(f"Bytes applied: {applied:,}", file=sys.stderr)


def cmd_info(args):
    doc = read_patch(args.patch_file)
    offsets = [off for off, _ in doc.edits]
    print(f"Patch file:   {args.patch_file} "
          f"({os.path.getsize(args.patch_file):,} bytes)")
    print(f"Base digest:  {doc.base_digest.hex()}")
    print(f"Edits:        {len(doc):,}")
    if offsets:
        print(f"Offsets:      {min(offsets):,} .. {max(offsets):,}")


def _add_verbose(p):
    p.add_argument('-v', '--verbose', action='store_true',
                   help='Print a summary to stderr')


def _add_generate_args(p):
    p.add_argument('original_file', help='The source file')
    p.add_argument('modified_file', help='The file to compare to')
    p.add_argument('output_file', help='The file to write the patch to')
    _add_verbose(p)
    p.set_defaults(func=cmd_generate)


def _add_apply_args(p):
    p.add_argument('target_file', help='The file to be patched')
    p.add_argument('patch_file', help='The patch file to apply')
    p.add_argument('-o', '--output', default=None,
                   help='Write the patched file here instead of '
                        'modifying target_file')
    p.add_argument('--in-place', action='store_true',
                   help='Write edits directly into target_file '
                        '(no temporary copy)')
    p.add_argument('--check', action='store_true',
                   help='Only verify that target_file matches the patch')
    _add_verbose(p)
    p.set_defaults(func=cmd_apply)


def _run(args):
    try:
        args.func(args)
    except (PatchError, OSError) as e:
        raise SystemExit(f"error: {e}")


def main_generate(argv=None):
    ap = argparse.ArgumentParser(
        prog='gen-patch',
        description='Generate a byte-substitution patch between two files')
    _add_generate_args(ap)
    _run(ap.parse_args(argv))


def main_apply(argv=None):
    ap = argparse.ArgumentParser(
        prog='apply-patch',
        description='Apply a byte-substitution patch to a file')
    _add_apply_args(ap)
    _run(ap.parse_args(argv))


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Byte-substitution patches guarded by a SHA-256 digest')
    sub = ap.add_subparsers(dest='command')

    _add_generate_args(sub.add_parser('generate', help='Generate a patch'))
    _add_apply_args(sub.add_parser('apply', help='Apply a patch'))

    inf = sub.add_parser('info', help='Show patch file header and statistics')
    inf.add_argument('patch_file', help='Patch file')
    inf.set_defaults(func=cmd_info)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    _run(args)


# ============================================================================

if __name__ == '__main__':
    main()
