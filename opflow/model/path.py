"""Addresses into a model tree.

A ModelPath is a tuple of segments: ``str`` segments select mapping keys,
``int`` segments select sequence indices. Keeping the two apart lets the
diff engine report sequence index changes distinctly from key changes.

Rendering:
    ModelPath(('hosts', 'zeus', 'packages', 2))  -> "hosts.zeus.packages[2]"
    ModelPath(('files', 'a.conf'))               -> 'files["a.conf"]'
    ModelPath(())                                -> ""
"""

import json
import re
from typing import Iterator, Tuple, Union

Segment = Union[str, int]

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_\-]*$')
_TOKEN_RE = re.compile(
    r'''\.?(?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)'''
    r'''|\[(?P<index>-?\d+)\]'''
    r'''|\[(?P<quoted>"(?:[^"\\]|\\.)*")\]'''
)


class ModelPath:
    """Immutable, hashable path into a model tree."""

    __slots__ = ('_segments',)

    def __init__(self, segments: Tuple[Segment, ...] = ()):
        for seg in segments:
            if isinstance(seg, bool) or not isinstance(seg, (str, int)):
                raise TypeError(f"Invalid path segment: {seg!r}")
        self._segments = tuple(segments)

    @classmethod
    def parse(cls, text: str) -> 'ModelPath':
        """Parse the rendered form back into a path.

        Raises:
            ValueError: If the text is not a valid rendered path.
        """
        segments = []
        pos = 0
        while pos < len(text):
            match = _TOKEN_RE.match(text, pos)
            if match is None or (match.group('ident') and pos > 0
                                 and text[pos] != '.'):
                raise ValueError(f"Invalid model path: {text!r}")
            if match.group('ident') is not None:
                segments.append(match.group('ident'))
            elif match.group('index') is not None:
                segments.append(int(match.group('index')))
            else:
                segments.append(json.loads(match.group('quoted')))
            pos = match.end()
        return cls(tuple(segments))

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return self._segments

    @property
    def parent(self) -> 'ModelPath':
        return ModelPath(self._segments[:-1])

    @property
    def last(self) -> Segment:
        return self._segments[-1]

    def child(self, segment: Segment) -> 'ModelPath':
        return ModelPath(self._segments + (segment,))

    def is_root(self) -> bool:
        return not self._segments

    def is_ancestor_of(self, other: 'ModelPath') -> bool:
        """True if ``other`` lies strictly beneath this path."""
        n = len(self._segments)
        return len(other._segments) > n and other._segments[:n] == self._segments

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self._segments)

    def __eq__(self, other) -> bool:
        if isinstance(other, ModelPath):
            return self._segments == other._segments
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._segments)

    def __str__(self) -> str:
        parts = []
        for seg in self._segments:
            if isinstance(seg, int):
                parts.append(f'[{seg}]')
            elif _IDENT_RE.match(seg):
                parts.append(f'.{seg}' if parts else seg)
            else:
                parts.append(f'[{json.dumps(seg)}]')
        return ''.join(parts)

    def __repr__(self) -> str:
        return f'ModelPath({str(self)!r})'
