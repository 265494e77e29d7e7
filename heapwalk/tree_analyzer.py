#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Parent/child tree reconstruction from a heap dump

Marks every class that is (or extends) a target type, scans its instances
and splits them into roots and children using a parent-pointer field
(compositeParent, then parent by default). Prints:
- the largest instance and its value
- root / node counts
- roots grouped by value, by count and by total shallow size
- optionally a per-root histogram and the ASCII tree of the first large tree

Usage:
    python3 -m heapwalk.tree_analyzer heap.hprof
    python3 -m heapwalk.tree_analyzer heap.hprof --type javax.faces.component.UIComponent --trees
"""

import argparse
import json
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from heapwalk.heap import HprofError, Instance, PrimitiveArrayInstance, simple_name
from heapwalk.histogram import HeapHistogram
from heapwalk.hprof_reader import load_heap
from heapwalk.text_tree import TextTree
from heapwalk.walker import convert, primitive_array_value, resolve, value_of, value_to_string


@dataclass
class AnalysisConfig:
    """Tree analysis settings"""
    target_type: str = 'char[]'
    parent_fields: List[str] = field(default_factory=lambda: ['compositeParent', 'parent'])
    id_field: str = 'id'
    label_field: str = 'txt.literal'
    value_width: int = 64
    min_group_count: int = 100      # show value groups with more members than this
    min_group_size: int = 0         # bytes; size-weighted groups at or above this
    group_top: int = 20
    tree_min_nodes: int = 500       # print the first tree with more nodes than this
    show_trees: bool = False
    histogram_top: int = 10
    list_classes: bool = False
    show_first: bool = True
    verbose: bool = False


@dataclass
class ScanResult:
    """Output of a single classification pass over the heap"""
    target_classes: list = field(default_factory=list)
    roots: List[Instance] = field(default_factory=list)
    links: Dict[Instance, List[Instance]] = field(default_factory=dict)
    total: int = 0
    max_instance: Optional[Instance] = None
    max_size: int = 0
    first_instance: Optional[Instance] = None

    @property
    def child_count(self) -> int:
        return sum(len(children) for children in self.links.values())


def is_target_class(java_class, type_name):
    """True when the class or any of its superclasses is named type_name"""
    return java_class.is_subclass_of(type_name)


def find_parent(instance, parent_fields):
    """First parent field that resolves to another instance, or None"""
    for name in parent_fields:
        parent = resolve(instance, name)
        # a self reference does not make a node its own child
        if isinstance(parent, Instance) and parent != instance:
            return parent
    return None


def scan(heap, config):
    result = ScanResult()
    target_ids = set()
    for jc in heap.get_all_classes():
        if is_target_class(jc, config.target_type):
            result.target_classes.append(jc)
            target_ids.add(jc.id)

    links = defaultdict(list)
    for instance in heap.get_all_instances():
        if instance.java_class.id not in target_ids:
            continue
        result.total += 1
        if result.first_instance is None:
            result.first_instance = instance

        if result.max_size < instance.size:
            result.max_size = instance.size
            result.max_instance = instance

        parent = find_parent(instance, config.parent_fields)
        if parent is None:
            result.roots.append(instance)
        else:
            links[parent].append(instance)

    result.links = dict(links)
    return result


def limit(text, width=64):
    return text[:max(width, 0)]


def instance_value(instance):
    """Displayable value of a node: array content, string content, or the object itself"""
    if isinstance(instance, PrimitiveArrayInstance):
        return primitive_array_value(instance)
    return convert(instance)


def node_text(instance, width=64):
    return limit(value_to_string(instance_value(instance)), width)


def group_roots(result, min_count=100, width=64):
    """(value, count) for root value groups with more than min_count members"""
    counts = defaultdict(int)
    for root in result.roots:
        counts[node_text(root, width)] += 1
    groups = [(value, count) for value, count in counts.items() if count > min_count]
    groups.sort(key=lambda x: (-x[1], x[0]))
    return groups


def group_roots_by_size(result, min_size=0, width=64):
    """(value, count, total_size) for root value groups, largest total size first"""
    stats = defaultdict(lambda: [0, 0])
    for root in result.roots:
        entry = stats[node_text(root, width)]
        entry[0] += 1
        entry[1] += root.size
    groups = [(value, count, size) for value, (count, size) in stats.items() if size >= min_size]
    groups.sort(key=lambda x: (-x[2], -x[1], x[0]))
    return groups


def display(node, children, config):
    """Text tree for one node: simple class name, id/label info, then children under '#'"""
    node_type = simple_name(node.java_class.name)
    info = "id:" + value_to_string(value_of(node, config.id_field))
    label = value_of(node, config.label_field)
    if label is not None:
        info += " el:" + value_to_string(label).replace('\n', ' ')
    if not children:
        return TextTree.t(node_type, TextTree.t(info))
    return TextTree.t(node_type, TextTree.t(info), TextTree.t('#', *children))


def build_tree(root, links, config):
    tree = TextTree(None)
    visited = {root}
    stack = [(root, tree)]
    while stack:
        node, slot = stack.pop()
        kids = []
        for child in links.get(node, ()):
            if child not in visited:
                visited.add(child)
                kids.append(child)
        slots = [TextTree(None) for _ in kids]
        shown = display(node, slots, config)
        slot.text, slot.children = shown.text, shown.children
        stack.extend(zip(kids, slots))
    return tree


def collect(histogram, node, links):
    """Feed a node and all of its descendants into the histogram"""
    visited = {node}
    stack = [node]
    while stack:
        current = stack.pop()
        histogram.feed(current)
        for child in links.get(current, ()):
            if child not in visited:
                visited.add(child)
                stack.append(child)
    return histogram


def print_trees(result, config, out):
    """Histogram per multi-node root, then the ASCII tree of the first large one"""
    for root in result.roots:
        if root not in result.links:
            continue
        hh = collect(HeapHistogram(), root, result.links)
        print(file=out)
        print(f"0x{root.id:x}", file=out)
        print(hh.format_top(config.histogram_top), file=out)
        print(file=out)
        # dumps may hold partial trees, only report reasonably large clusters
        if hh.total_count > config.tree_min_nodes:
            print(build_tree(root, result.links, config).print_as_tree(), file=out)
            break


def report(heap, config, out=None):
    """Run the scan and print the text report; returns the ScanResult"""
    out = out or sys.stdout
    if config.list_classes:
        for jc in heap.get_all_classes():
            print(f"class => {jc.name}", file=out)

    result = scan(heap, config)
    print(f"{config.target_type} classes: {len(result.target_classes)}", file=out)

    if result.total == 0:
        print(f"No instances of {config.target_type} found", file=out)
        return result

    if config.show_first:
        for fv in result.first_instance.field_values():
            print(f"{fv.field.name} => {value_to_string(fv.value)}", file=out)

    print(f"maxsize {result.max_size} at 0x{result.max_instance.id:x}", file=out)
    print(f"VALUE => {node_text(result.max_instance, config.value_width)}", file=out)
    print(f"Found {len(result.roots)} tree roots and {result.total} nodes in total", file=out)

    for value, count in group_roots(result, config.min_group_count, config.value_width):
        print(f"{count} => {value}", file=out)

    size_groups = group_roots_by_size(result, config.min_group_size, config.value_width)[:config.group_top]
    if size_groups:
        print(f"\n=== TOP {config.group_top} root values by size ===", file=out)
        print(f"{'Size(B)':>14} {'Count':>10}  Value", file=out)
        print("-" * 90, file=out)
        for value, count, size in size_groups:
            print(f"{size:>14,} {count:>10,}  {value}", file=out)

    if config.show_trees:
        print_trees(result, config, out)

    return result


def result_to_dict(heap, result, config):
    data = {
        'heap': heap.summary(),
        'target_type': config.target_type,
        'target_classes': [jc.name for jc in result.target_classes],
        'total': result.total,
        'roots': len(result.roots),
        'children': result.child_count,
        'max': None,
        'groups': [{'value': v, 'count': c}
                   for v, c in group_roots(result, config.min_group_count, config.value_width)],
        'size_groups': [{'value': v, 'count': c, 'size': s}
                        for v, c, s in group_roots_by_size(result, config.min_group_size,
                                                           config.value_width)[:config.group_top]],
    }
    if result.max_instance is not None:
        data['max'] = {
            'id': result.max_instance.id,
            'size': result.max_size,
            'value': node_text(result.max_instance, config.value_width),
        }
    return data


def add_arguments(parser):
    parser.add_argument('file', nargs='?', help='HPROF file path')
    parser.add_argument('-t', '--type', dest='target_type', default='char[]',
                        help='Target type; subclasses match too (default: char[])')
    parser.add_argument('-p', '--parent-field', dest='parent_fields', action='append',
                        help='Parent pointer field, repeatable, first match wins '
                             '(default: compositeParent, parent)')
    parser.add_argument('--id-field', default='id', help='Field shown as node id (default: id)')
    parser.add_argument('--label-field', default='txt.literal',
                        help='Field path shown as node label (default: txt.literal)')
    parser.add_argument('-w', '--width', type=int, default=64, help='Value truncation width (default 64)')
    parser.add_argument('-g', '--min-group', type=int, default=100,
                        help='Show value groups with more roots than this (default 100)')
    parser.add_argument('--min-group-size', type=int, default=0,
                        help='Minimum total bytes for size-weighted groups (default 0)')
    parser.add_argument('--top', type=int, default=20, help='Number of size-weighted groups (default 20)')
    parser.add_argument('--trees', action='store_true', help='Print per-root histograms and an ASCII tree')
    parser.add_argument('--tree-min-nodes', type=int, default=500,
                        help='Print the first tree with more nodes than this (default 500)')
    parser.add_argument('--list-classes', action='store_true', help='List every class in the dump')
    parser.add_argument('--no-first', action='store_true', help='Do not dump fields of the first instance')
    parser.add_argument('--json', action='store_true', help='Output JSON instead of text')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print loading progress to stderr')


def config_from_args(args):
    return AnalysisConfig(
        target_type=args.target_type,
        parent_fields=args.parent_fields or ['compositeParent', 'parent'],
        id_field=args.id_field,
        label_field=args.label_field,
        value_width=args.width,
        min_group_count=args.min_group,
        min_group_size=args.min_group_size,
        group_top=args.top,
        tree_min_nodes=args.tree_min_nodes,
        show_trees=args.trees,
        list_classes=args.list_classes,
        show_first=not args.no_first,
        verbose=args.verbose,
    )


def run(args, out=None):
    """Execute a parsed command line; returns the process exit code"""
    out = out or sys.stdout
    if not args.file:
        print("Please provide heapdump path as sole argument", file=sys.stderr)
        return 1
    config = config_from_args(args)
    try:
        heap = load_heap(args.file, config.verbose)
    except HprofError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        result = scan(heap, config)
        print(json.dumps(result_to_dict(heap, result, config), indent=2, ensure_ascii=False), file=out)
    else:
        report(heap, config, out)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Reconstruct parent/child trees of a type from a heap dump",
        formatter_class=argparse.RawTextHelpFormatter
    )
    add_arguments(parser)
    return run(parser.parse_args(argv))


if __name__ == '__main__':
    sys.exit(main())
