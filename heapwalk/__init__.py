"""Heap dump reading and parent/child tree analysis"""

from heapwalk.heap import Heap, HprofError, HprofFormatError, Instance, JavaClass
from heapwalk.hprof_reader import load_heap, read_heap

__all__ = ['Heap', 'HprofError', 'HprofFormatError', 'Instance', 'JavaClass', 'load_heap', 'read_heap']
