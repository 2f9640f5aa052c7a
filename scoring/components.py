"""
Component tagging heuristic: rank subsystem names from a list of changed file paths.

Every directory prefix of every path is counted. Paths that follow a recognised
layout (``src/components/<x>``, ``services/<x>``, ...) or whose file name encodes
an architectural role (``*.service.ts``) earn extra weight, so meaningful
subsystem names outrank generic top-level folders. The result is deterministic
for a given input list; ties keep first-seen order.
"""
from typing import List, Dict, Iterable
from normalize.models import ComponentTag

DEPTH_MULTIPLIER = 0.5
STRUCTURAL_BONUS = 2
ROLE_SUFFIX_BONUS = 3
MAX_COMPONENTS = 10
ROOT_COMPONENT = 'root'

# layout prefixes whose next segment names a component
FRONTEND_BASES = (
    ('src', 'components'),
    ('app', 'components'),
    ('src', 'pages'),
    ('src', 'views'),
    ('src', 'containers'),
    ('src', 'features'),
    ('components',),
)

# directory names whose next segment names a component
BACKEND_DIRS = ('controllers', 'routes', 'models', 'services', 'api', 'middleware')

ROLE_SUFFIXES = (
    '.component.ts',
    '.component.js',
    '.controller.ts',
    '.controller.js',
    '.service.ts',
    '.service.js',
)


def _split(path: str) -> List[str]:
    path = path.strip()
    if path.startswith('./'):
        path = path[2:]
    return [s for s in path.split('/') if s]


def _depth(name: str) -> int:
    return name.count('/') + 1


def _find_sequence(segments: List[str], base: tuple) -> int:
    """Index of the first occurrence of ``base`` inside ``segments`` (or -1)."""
    width = len(base)
    for i in range(len(segments) - width + 1):
        if tuple(segments[i:i + width]) == base:
            return i
    return -1


def _structural_names(segments: List[str]) -> List[str]:
    names: List[str] = []
    for base in FRONTEND_BASES:
        idx = _find_sequence(segments, base)
        # the component segment must be a directory, not the file itself
        if idx >= 0 and len(segments) > idx + len(base) + 1:
            names.append('/'.join(segments[idx:idx + len(base) + 1]))
    for dirname in BACKEND_DIRS:
        if dirname in segments[:-1]:
            idx = segments.index(dirname)
            if idx < len(segments) - 2:
                names.append('/'.join(segments[idx:idx + 2]))
    return names


class _Tally:
    """Ordered occurrence counters plus bonus weight per candidate name."""

    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.bonus: Dict[str, float] = {}

    def seen(self, name: str):
        self.counts[name] = self.counts.get(name, 0) + 1
        self.bonus.setdefault(name, 0)

    def boost(self, name: str, amount: float):
        self.counts.setdefault(name, 0)
        self.bonus[name] = self.bonus.get(name, 0) + amount

    def weight(self, name: str) -> float:
        return self.counts[name] * (_depth(name) * DEPTH_MULTIPLIER) + self.bonus[name]


def _tally_path(tally: _Tally, path: str):
    segments = _split(path)
    if not segments:
        return
    if len(segments) == 1:
        tally.seen(ROOT_COMPONENT)
        return

    prefixes = set()
    for i in range(1, len(segments)):
        prefix = '/'.join(segments[:i])
        prefixes.add(prefix)
        tally.seen(prefix)

    for name in dict.fromkeys(_structural_names(segments)):
        if name not in prefixes:
            tally.seen(name)
        tally.boost(name, STRUCTURAL_BONUS)

    if segments[-1].endswith(ROLE_SUFFIXES):
        tally.boost('/'.join(segments[:-1]), ROLE_SUFFIX_BONUS)


def extract_components(file_paths: Iterable[str], limit: int = MAX_COMPONENTS) -> List[ComponentTag]:
    """Return the top ``limit`` component tags for the given file paths, best first."""
    tally = _Tally()
    for path in file_paths or []:
        if path:
            _tally_path(tally, path)

    # sorted() is stable, so equal weights keep insertion (first-seen) order
    ranked = sorted(tally.counts.keys(), key=tally.weight, reverse=True)
    return [ComponentTag(name, tally.counts[name], _depth(name)) for name in ranked[:limit]]
