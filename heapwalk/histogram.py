#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Per-class instance histogram (count and shallow size)
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import List


@dataclass
class HistogramEntry:
    class_name: str
    count: int = 0
    size: int = 0

    @property
    def avg_size(self) -> float:
        return self.size / self.count if self.count else 0


class HeapHistogram:

    def __init__(self):
        self.entries = defaultdict(lambda: {'count': 0, 'size': 0})
        self.total_count = 0
        self.total_size = 0

    def feed(self, instance):
        stats = self.entries[instance.java_class.name]
        stats['count'] += 1
        stats['size'] += instance.size
        self.total_count += 1
        self.total_size += instance.size

    def feed_all(self, instances):
        for instance in instances:
            self.feed(instance)
        return self

    def top(self, top_n=None) -> List[HistogramEntry]:
        """Entries ordered by total size, then count, then name"""
        entries = [HistogramEntry(name, stats['count'], stats['size'])
                   for name, stats in self.entries.items()]
        entries.sort(key=lambda e: (-e.size, -e.count, e.class_name))
        return entries if top_n is None else entries[:top_n]

    def format_top(self, top_n=10):
        lines = [f"{'Class':<50} {'Count':>10} {'Size(B)':>14} {'Avg(B)':>10}",
                 "-" * 87]
        for e in self.top(top_n):
            lines.append(f"{e.class_name:<50} {e.count:>10,} {e.size:>14,} {e.avg_size:>10.1f}")
        lines.append(f"{'Total':<50} {self.total_count:>10,} {self.total_size:>14,}")
        return '\n'.join(lines)

    def to_dict(self, top_n=None):
        return {
            'total_count': self.total_count,
            'total_size': self.total_size,
            'classes': [
                {'name': e.class_name, 'count': e.count, 'size': e.size}
                for e in self.top(top_n)
            ],
        }
