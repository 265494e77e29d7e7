import argparse
import json
import os
import sys

from heapwalk import tree_analyzer
from heapwalk.heap import HprofError
from heapwalk.histogram import HeapHistogram
from heapwalk.hprof_reader import load_heap


def analyze_tree(args):
    """Runs the parent/child tree report."""
    if args.file and not args.json and os.path.exists(args.file):
        print(f"--- Analyzing HPROF file: {args.file} ---")
    return tree_analyzer.run(args)


def analyze_histogram(args):
    """Prints heap summary, GC roots and the class histogram."""
    heap = load_heap(args.file, args.verbose)
    histogram = HeapHistogram().feed_all(heap.get_all_instances())

    if args.json:
        data = {'heap': heap.summary(), 'gc_roots': heap.gc_root_statistics(),
                'histogram': histogram.to_dict(args.top)}
        print(json.dumps(data, indent=2, ensure_ascii=False))
        return 0

    summary = heap.summary()
    print(f"--- Analyzing HPROF file: {args.file} ---")
    print(f"Version: {summary['version']}  id size: {summary['id_size']}")
    print(f"Classes: {summary['classes']:,}  Instances: {summary['instances']:,}  "
          f"Arrays: {summary['arrays']:,}  Shallow total: {summary['total_size'] / 1024 / 1024:.2f} MB")

    print(f"\n=== GC Root statistics ===")
    print(f"{'Type':<25} {'Count':<10}")
    print("-" * 40)
    for type_name, count in heap.gc_root_statistics().items():
        print(f"{type_name:<25} {count:<10,}")
    print(f"\nTotal GC roots: {summary['gc_roots']:,}")

    print(f"\n=== TOP {args.top} classes by shallow size ===")
    print(histogram.format_top(args.top))
    return 0


def analyze_classes(args):
    """Lists classes, optionally only subclasses of a type."""
    heap = load_heap(args.file, args.verbose)
    counts = {}
    for instance in heap.get_all_instances():
        counts[instance.java_class.id] = counts.get(instance.java_class.id, 0) + 1

    for jc in heap.get_all_classes():
        if args.subclass_of and not jc.is_subclass_of(args.subclass_of):
            continue
        super_class = jc.super_class
        super_name = super_class.name if super_class else '-'
        print(f"{jc.name:<60} {super_name:<40} {counts.get(jc.id, 0):>10,}")
    return 0


def main(argv=None):
    """Main function to parse arguments and dispatch commands."""
    parser = argparse.ArgumentParser(
        description="Heap dump tree and histogram analysis.",
        epilog="Examples:\n"
               "  python3 analyze.py tree dump.hprof\n"
               "  python3 analyze.py tree dump.hprof --type javax.faces.component.UIComponent --trees\n"
               "  python3 analyze.py histogram dump.hprof --top 30\n"
               "  python3 analyze.py classes dump.hprof --subclass-of java.util.AbstractMap",
        formatter_class=argparse.RawTextHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    tree_parser = subparsers.add_parser('tree', help='Reconstruct parent/child trees of a type.')
    tree_analyzer.add_arguments(tree_parser)

    histogram_parser = subparsers.add_parser('histogram', help='Class histogram and GC root statistics.')
    histogram_parser.add_argument('file', type=str, help='Path to the .hprof file')
    histogram_parser.add_argument('-t', '--top', type=int, default=20, help='Show TOP N classes (default 20)')
    histogram_parser.add_argument('--json', action='store_true', help='Output JSON')
    histogram_parser.add_argument('-v', '--verbose', action='store_true', help='Print loading progress')

    classes_parser = subparsers.add_parser('classes', help='List classes with superclass and instance count.')
    classes_parser.add_argument('file', type=str, help='Path to the .hprof file')
    classes_parser.add_argument('-s', '--subclass-of', help='Only classes extending this type')
    classes_parser.add_argument('-v', '--verbose', action='store_true', help='Print loading progress')

    args = parser.parse_args(argv)

    try:
        if args.command == 'tree':
            return analyze_tree(args)
        elif args.command == 'histogram':
            return analyze_histogram(args)
        elif args.command == 'classes':
            return analyze_classes(args)
    except HprofError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 1


if __name__ == '__main__':
    try:
        code = main()
    except Exception as e:
        print(f"An unexpected error occurred: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)
