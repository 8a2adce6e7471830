"""
Manifest comparison.
"""

from typing import Dict, List


class DiffResult:
    """Paths added, removed and changed between manifest A and manifest B."""

    def __init__(self, added: List[str], removed: List[str], changed: List[str], total_a: int, total_b: int):
        self.added = added
        self.removed = removed
        self.changed = changed
        self.total_a = total_a
        self.total_b = total_b

    @property
    def summary(self) -> dict:
        return {
            'added': len(self.added),
            'removed': len(self.removed),
            'changed': len(self.changed),
            'totalA': self.total_a,
            'totalB': self.total_b,
        }

    def to_dict(self) -> dict:
        return {
            'added': list(self.added),
            'removed': list(self.removed),
            'changed': list(self.changed),
            'summary': self.summary,
        }


def _hash_map(manifest_doc) -> Dict[str, str]:
    sha_map = manifest_doc.get('sha256') if isinstance(manifest_doc, dict) else None
    if not isinstance(sha_map, dict):
        return {}
    return {rel: str(h) for rel, h in sha_map.items()}


def diff_manifests(manifest_a: dict, manifest_b: dict) -> DiffResult:
    """
    Compare two manifests' path -> hash maps.

    added: in B only; removed: in A only; changed: in both with different
    hashes. Each list is sorted.
    """
    map_a = _hash_map(manifest_a)
    map_b = _hash_map(manifest_b)

    added = sorted(rel for rel in map_b if rel not in map_a)
    removed = sorted(rel for rel in map_a if rel not in map_b)
    changed = sorted(rel for rel in map_b if rel in map_a and map_a[rel] != map_b[rel])

    return DiffResult(added, removed, changed, len(map_a), len(map_b))
