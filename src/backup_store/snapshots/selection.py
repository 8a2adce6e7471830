"""
File selection for snapshots.

Include/exclude globs are matched against forward-slash relative paths:

    *       any run of characters inside one path segment
    **      zero or more whole segments
    ?       one character other than '/'
    [...]   character class; a leading '!' or '^' negates it
    dir/    same as dir/**

Includes must match the whole path; select a subtree with 'dir/' or 'dir/**'.
Excludes also match any parent directory of a path, so 'node_modules'
excludes everything beneath it. Excludes win over includes, and excluded
directories are not descended.
"""

import os
import re
import stat
from pathlib import Path
from typing import List, NamedTuple, Sequence

_STARS_RE = re.compile(r'^\*{2,}\Z')


class SourceFile(NamedTuple):
    """A regular file selected for a snapshot."""

    abs_path: Path
    rel_path: str


def normalize_rel(rel: str) -> str:
    """Forward-slash form of a relative path, without './' or empty segments."""
    parts = [p for p in rel.replace(os.sep, '/').split('/') if p not in ('', '.')]
    return '/'.join(parts)


def compile_glob(pattern: str) -> re.Pattern:
    """Translate one glob pattern into an anchored regular expression."""
    pattern = pattern.replace('\\', '/')
    if pattern.endswith('/'):
        pattern = pattern.rstrip('/') + '/**'
    segments = [s for s in normalize_rel(pattern).split('/') if s]
    if not segments:
        return re.compile(r'(?!)')

    regex = []
    last = len(segments) - 1
    skip_separator = True
    for idx, segment in enumerate(segments):
        if _STARS_RE.match(segment):
            if idx == last:
                regex.append('.*' if skip_separator else '(?:/.*)?')
            elif skip_separator:
                regex.append('(?:.*/)?')
                skip_separator = True
                continue
            else:
                regex.append('(?:/.*)?')
            skip_separator = False
            continue
        if not skip_separator:
            regex.append('/')
        regex.append(_translate_segment(segment))
        skip_separator = False
    return re.compile(''.join(regex) + r'\Z', re.DOTALL)


def _translate_segment(segment: str) -> str:
    out = []
    i, n = 0, len(segment)
    while i < n:
        c = segment[i]
        i += 1
        if c == '*':
            while i < n and segment[i] == '*':
                i += 1
            out.append('[^/]*')
        elif c == '?':
            out.append('[^/]')
        elif c == '[':
            j = i
            if j < n and segment[j] in '!^':
                j += 1
            if j < n and segment[j] == ']':
                j += 1
            while j < n and segment[j] != ']':
                j += 1
            if j >= n:
                out.append(re.escape('['))
                continue
            body = segment[i:j]
            i = j + 1
            negate = body[:1] in ('!', '^')
            if negate:
                body = body[1:]
            body = body.replace('\\', '\\\\').replace('^', '\\^').replace('[', '\\[').replace(']', '\\]')
            out.append(f"[^/{body}]" if negate else f"[{body}]")
        else:
            out.append(re.escape(c))
    return ''.join(out)


class PathFilter:
    """Compiled include/exclude rules."""

    def __init__(self, includes: Sequence[str] = (), excludes: Sequence[str] = ()):
        self.includes = [compile_glob(p) for p in includes or ()]
        self.excludes = [compile_glob(p) for p in excludes or ()]

    def is_excluded(self, rel: str) -> bool:
        candidates = _self_and_parents(rel)
        return any(p.match(c) for p in self.excludes for c in candidates)

    def is_included(self, rel: str) -> bool:
        if not self.includes:
            return True
        return any(p.match(rel) for p in self.includes)

    def selects(self, rel: str) -> bool:
        """Excludes take precedence over includes."""
        return not self.is_excluded(rel) and self.is_included(rel)


def _self_and_parents(rel: str) -> List[str]:
    parts = rel.split('/')
    return ['/'.join(parts[:i]) for i in range(len(parts), 0, -1)]


def _raise(err: OSError) -> None:
    raise err


def walk_source(root: str | Path, path_filter: PathFilter) -> List[SourceFile]:
    """
    Enumerate regular files under root that the filter selects.

    Symlinks are not followed or recorded. Directories matching an exclude
    pattern are pruned. Results are sorted by relative path.
    """
    root = Path(root)
    selected = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        rel_dir = normalize_rel(os.path.relpath(dirpath, root))
        kept = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if os.path.islink(os.path.join(dirpath, name)):
                continue
            if path_filter.is_excluded(rel):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in filenames:
            abs_path = Path(dirpath) / name
            rel = f"{rel_dir}/{name}" if rel_dir else name
            try:
                mode = os.lstat(abs_path).st_mode
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(mode):
                continue
            if path_filter.selects(rel):
                selected.append(SourceFile(abs_path, rel))

    selected.sort(key=lambda f: f.rel_path)
    return selected
