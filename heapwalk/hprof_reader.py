#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
HPROF reader

Reads a JVM / Android heap dump (JAVA PROFILE 1.0.x) into a Heap:
- string table and LOAD_CLASS records
- CLASS_DUMP with constant pool, static values and field declarations
- INSTANCE_DUMP / OBJECT_ARRAY_DUMP / PRIMITIVE_ARRAY_DUMP
- Android extensions (HEAP_DUMP_INFO, PRIMITIVE_ARRAY_NODATA, extra roots)

Format reference:
http://hg.openjdk.java.net/jdk6/jdk6/jdk/raw-file/tip/src/share/demo/jvmti/hprof/manual.html
"""

import os
import sys
from datetime import datetime

from heapwalk.heap import (
    BASIC_TYPES, FieldDef, FieldValue, GcRoot, Heap, HprofError,
    HprofFormatError, Instance, JavaClass, ObjectArrayInstance,
    PrimitiveArrayInstance, decode_value, normalize_class_name, type_size,
)


class HprofReader:
    """Streaming decoder for a single HPROF file"""

    # HPROF Tags
    TAG_STRING = 0x01
    TAG_LOAD_CLASS = 0x02
    TAG_UNLOAD_CLASS = 0x03
    TAG_STACK_FRAME = 0x04
    TAG_STACK_TRACE = 0x05
    TAG_ALLOC_SITES = 0x06
    TAG_HEAP_SUMMARY = 0x07
    TAG_START_THREAD = 0x0A
    TAG_END_THREAD = 0x0B
    TAG_HEAP_DUMP = 0x0C
    TAG_HEAP_DUMP_SEGMENT = 0x1C
    TAG_HEAP_DUMP_END = 0x2C
    TAG_CPU_SAMPLES = 0x0D
    TAG_CONTROL_SETTINGS = 0x0E

    # Heap Dump Sub-record Tags
    HEAP_TAG_ROOT_UNKNOWN = 0xFF
    HEAP_TAG_ROOT_JNI_GLOBAL = 0x01
    HEAP_TAG_ROOT_JNI_LOCAL = 0x02
    HEAP_TAG_ROOT_JAVA_FRAME = 0x03
    HEAP_TAG_ROOT_NATIVE_STACK = 0x04
    HEAP_TAG_ROOT_STICKY_CLASS = 0x05
    HEAP_TAG_ROOT_THREAD_BLOCK = 0x06
    HEAP_TAG_ROOT_MONITOR_USED = 0x07
    HEAP_TAG_ROOT_THREAD_OBJECT = 0x08
    HEAP_TAG_CLASS_DUMP = 0x20
    HEAP_TAG_INSTANCE_DUMP = 0x21
    HEAP_TAG_OBJECT_ARRAY_DUMP = 0x22
    HEAP_TAG_PRIMITIVE_ARRAY_DUMP = 0x23
    HEAP_TAG_HEAP_DUMP_INFO = 0xfe
    HEAP_TAG_ROOT_INTERNED_STRING = 0x89
    HEAP_TAG_ROOT_FINALIZING = 0x8a
    HEAP_TAG_ROOT_DEBUGGER = 0x8b
    HEAP_TAG_ROOT_REFERENCE_CLEANUP = 0x8c
    HEAP_TAG_ROOT_VM_INTERNAL = 0x8d
    HEAP_TAG_ROOT_JNI_MONITOR = 0x8e
    HEAP_TAG_ROOT_UNREACHABLE = 0x90
    HEAP_TAG_PRIMITIVE_ARRAY_NODATA = 0xc3

    # root tag -> fields following the object id (u4 except jni_ref_id)
    ROOT_LAYOUTS = {
        HEAP_TAG_ROOT_UNKNOWN: (),
        HEAP_TAG_ROOT_JNI_GLOBAL: ('jni_ref_id',),
        HEAP_TAG_ROOT_JNI_LOCAL: ('thread_serial', 'frame_num'),
        HEAP_TAG_ROOT_JAVA_FRAME: ('thread_serial', 'frame_num'),
        HEAP_TAG_ROOT_NATIVE_STACK: ('thread_serial',),
        HEAP_TAG_ROOT_STICKY_CLASS: (),
        HEAP_TAG_ROOT_THREAD_BLOCK: ('thread_serial',),
        HEAP_TAG_ROOT_MONITOR_USED: (),
        HEAP_TAG_ROOT_THREAD_OBJECT: ('thread_serial', 'stack_trace_serial'),
        HEAP_TAG_ROOT_INTERNED_STRING: (),
        HEAP_TAG_ROOT_FINALIZING: (),
        HEAP_TAG_ROOT_DEBUGGER: (),
        HEAP_TAG_ROOT_REFERENCE_CLEANUP: (),
        HEAP_TAG_ROOT_VM_INTERNAL: (),
        HEAP_TAG_ROOT_JNI_MONITOR: ('thread_serial', 'frame_num'),
        HEAP_TAG_ROOT_UNREACHABLE: (),
    }

    SKIPPED_TAGS = {
        TAG_UNLOAD_CLASS, TAG_STACK_FRAME, TAG_STACK_TRACE, TAG_ALLOC_SITES,
        TAG_HEAP_SUMMARY, TAG_START_THREAD, TAG_END_THREAD, TAG_CPU_SAMPLES,
        TAG_CONTROL_SETTINGS,
    }

    def __init__(self, stream, verbose=False):
        self.hprof = stream
        self.verbose = verbose
        self.size_of_identifier = 4
        self.heap = None

        # class_id -> name id from LOAD_CLASS
        self.class_names = {}
        # class_id -> raw class dump tuple
        self.class_dumps = {}
        # (kind, args) in dump order; resolved once all classes are known
        self.pending_objects = []

    def read(self):
        """Decode the whole stream and return the indexed Heap"""
        self.readHead()
        self.readRecords()
        self.resolve()
        return self.heap

    def readHead(self):
        """Read HPROF file header"""
        version_bytes = []
        while True:
            b = self.hprof.read(1)
            if not b:
                raise HprofFormatError('Unexpected end of file in header', self.tell())
            if b == b'\x00':
                break
            version_bytes.append(b)
        version = b''.join(version_bytes).decode('utf-8', 'replace')
        if not version.startswith('JAVA PROFILE'):
            raise HprofFormatError(f'Not an HPROF file: {version[:32]!r}', 0)
        self.size_of_identifier = self.readInt(4)
        if self.size_of_identifier not in (4, 8):
            raise HprofFormatError(f'Unsupported identifier size: {self.size_of_identifier}', self.tell())
        timestamp = self.readInt(8)
        if self.verbose:
            print("HPROF version: %s" % version, file=sys.stderr)
            print("Identifier size: %d" % self.size_of_identifier, file=sys.stderr)
            try:
                when = datetime.fromtimestamp(timestamp / 1000)
            except (ValueError, OverflowError, OSError):
                when = '%d ms' % timestamp
            print("Timestamp: %s" % when, file=sys.stderr)
        self.heap = Heap(version, self.size_of_identifier, timestamp)

    def readRecords(self):
        """Read all top-level records up to EOF or HEAP_DUMP_END"""
        while True:
            head = self.hprof.read(1)
            if not head:
                break
            tag = head[0]
            self.readInt(4)  # time
            length = self.readInt(4)
            if tag == self.TAG_STRING:
                self.readString(length)
            elif tag == self.TAG_LOAD_CLASS:
                self.readLoadClass(length)
            elif tag in (self.TAG_HEAP_DUMP, self.TAG_HEAP_DUMP_SEGMENT):
                self.readHeapDumpInternal(length)
            elif tag == self.TAG_HEAP_DUMP_END:
                self.skip(length)
                break
            elif tag in self.SKIPPED_TAGS:
                self.skip(length)
            else:
                if self.verbose:
                    print("Skipping unknown record tag 0x%02x at %d" % (tag, self.tell()), file=sys.stderr)
                self.skip(length)

    def readString(self, length):
        string_id = self.readId()
        raw = self.readBytes(length - self.size_of_identifier)
        self.heap.strings[string_id] = raw.decode('utf-8', 'replace')

    def readLoadClass(self, length):
        self.readInt(4)  # class serial
        class_id = self.readId()
        self.readInt(4)  # stack trace serial
        name_id = self.readId()
        self.class_names[class_id] = name_id
        extra = length - (8 + 2 * self.size_of_identifier)
        if extra > 0:
            self.skip(extra)

    def readHeapDumpInternal(self, length):
        """Read heap dump segment with GC roots and objects"""
        end = self.tell() + length
        while self.tell() < end:
            tag = self.readInt(1)
            if tag in self.ROOT_LAYOUTS:
                self.readGcRoot(tag)
            elif tag == self.HEAP_TAG_CLASS_DUMP:
                self.readClassDump()
            elif tag == self.HEAP_TAG_INSTANCE_DUMP:
                self.readInstanceDump()
            elif tag == self.HEAP_TAG_OBJECT_ARRAY_DUMP:
                self.readObjectArrayDump()
            elif tag == self.HEAP_TAG_PRIMITIVE_ARRAY_DUMP:
                self.readPrimitiveArrayDump()
            elif tag == self.HEAP_TAG_PRIMITIVE_ARRAY_NODATA:
                self.readPrimitiveArrayNoData()
            elif tag == self.HEAP_TAG_HEAP_DUMP_INFO:
                self.readInt(4)  # heap type
                self.readId()  # heap name id
            else:
                raise HprofFormatError('Not supported heap sub-record tag: 0x%02x' % tag, self.tell() - 1)

    def readGcRoot(self, tag):
        obj_id = self.readId()
        extra = {}
        for name in self.ROOT_LAYOUTS[tag]:
            extra[name] = self.readId() if name == 'jni_ref_id' else self.readInt(4)
        if obj_id != 0:
            self.heap.gc_roots[obj_id] = GcRoot(obj_id, tag, extra)

    def readClassDump(self):
        class_id = self.readId()
        self.readInt(4)  # stack trace serial
        super_class_id = self.readId()
        class_loader_id = self.readId()
        self.readId()  # signers
        self.readId()  # protection domain
        self.readId()  # reserved
        self.readId()  # reserved
        instance_size = self.readInt(4)

        for _ in range(self.readInt(2)):
            self.readInt(2)  # constant pool index
            self.readValue(self.readInt(1))

        static_fields = []
        for _ in range(self.readInt(2)):
            name_id = self.readId()
            type_id = self.readInt(1)
            static_fields.append((name_id, type_id, self.readValue(type_id)))

        instance_fields = []
        for _ in range(self.readInt(2)):
            name_id = self.readId()
            type_id = self.readInt(1)
            instance_fields.append((name_id, type_id))

        self.class_dumps[class_id] = (super_class_id, class_loader_id, instance_size,
                                      static_fields, instance_fields)

    def readInstanceDump(self):
        instance_id = self.readId()
        self.readInt(4)  # stack trace serial
        class_id = self.readId()
        fields_byte_size = self.readInt(4)
        fields_data = self.readBytes(fields_byte_size)
        self.pending_objects.append(('instance', (instance_id, class_id, fields_data)))

    def readObjectArrayDump(self):
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        array_class_id = self.readId()
        elements = [self.readId() for _ in range(length)]
        self.pending_objects.append(('object_array', (array_id, array_class_id, elements)))

    def readPrimitiveArrayDump(self):
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        type_id = self.readInt(1)
        if type_id not in BASIC_TYPES:
            raise HprofFormatError('Invalid primitive array type: %d' % type_id, self.tell() - 1)
        data = self.readBytes(BASIC_TYPES[type_id][0] * length)
        self.pending_objects.append(('primitive_array', (array_id, type_id, length, data)))

    def readPrimitiveArrayNoData(self):
        """Android specific: primitive array without element data"""
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        type_id = self.readInt(1)
        if type_id not in BASIC_TYPES:
            raise HprofFormatError('Invalid primitive array type: %d' % type_id, self.tell() - 1)
        self.pending_objects.append(('primitive_array', (array_id, type_id, length, None)))

    # ==================== Resolution ====================

    def resolve(self):
        """Build classes and instances once every record has been read"""
        heap = self.heap
        strings = heap.strings

        class_ids = list(self.class_names)
        class_ids.extend(cid for cid in self.class_dumps if cid not in self.class_names)
        for class_id in class_ids:
            name_id = self.class_names.get(class_id)
            name = strings.get(name_id) if name_id is not None else None
            name = normalize_class_name(name) if name else 'class@0x%x' % class_id
            super_class_id, loader_id, instance_size, static_raw, fields_raw = \
                self.class_dumps.get(class_id, (0, 0, 0, [], []))
            fields = [FieldDef(strings.get(nid, 'field@0x%x' % nid), tid) for nid, tid in fields_raw]
            static_fields = [FieldValue(FieldDef(strings.get(nid, 'field@0x%x' % nid), tid), value)
                             for nid, tid, value in static_raw]
            heap.add_class(JavaClass(heap, class_id, name, super_class_id, instance_size,
                                     fields, static_fields, loader_id))

        object_header = heap.object_header_size
        array_header = heap.array_header_size
        for kind, args in self.pending_objects:
            if kind == 'instance':
                instance_id, class_id, data = args
                java_class = heap.get_java_class(class_id) or self.synthetic_class('class@0x%x' % class_id)
                heap.instances[instance_id] = Instance(
                    heap, instance_id, java_class, data, object_header + len(data))
            elif kind == 'object_array':
                array_id, class_id, elements = args
                java_class = heap.get_java_class(class_id)
                if java_class is None or not java_class.is_array:
                    element_name = java_class.name if java_class else 'java.lang.Object'
                    java_class = self.synthetic_class(element_name + '[]')
                heap.instances[array_id] = ObjectArrayInstance(
                    heap, array_id, java_class, elements,
                    array_header + len(elements) * self.size_of_identifier)
            else:
                array_id, type_id, length, data = args
                size, name, _ = BASIC_TYPES[type_id]
                java_class = self.synthetic_class(name + '[]')
                heap.instances[array_id] = PrimitiveArrayInstance(
                    heap, array_id, java_class, type_id, length, data, array_header + size * length)

        self.class_names.clear()
        self.class_dumps.clear()
        self.pending_objects = []

    def synthetic_class(self, name):
        """Look up a class by name, creating a placeholder when the dump has none"""
        heap = self.heap
        java_class = heap.find_class(name)
        if java_class is None:
            synthetic_id = -(len(heap.classes) + 1)
            while synthetic_id in heap.classes:
                synthetic_id -= 1
            obj = heap.find_class('java.lang.Object')
            java_class = JavaClass(heap, synthetic_id, name, obj.id if obj else 0)
            heap.add_class(java_class)
        return java_class

    # ==================== Utility Methods ====================

    def tell(self):
        return self.hprof.tell()

    def readBytes(self, length):
        data = self.hprof.read(length)
        if len(data) != length:
            raise HprofFormatError('Unexpected end of file: wanted %d bytes, got %d' % (length, len(data)),
                                   self.tell())
        return data

    def readInt(self, length):
        return int.from_bytes(self.readBytes(length), byteorder='big', signed=False)

    def readId(self):
        return self.readInt(self.size_of_identifier)

    def readValue(self, type_id):
        size = type_size(type_id, self.size_of_identifier)
        if size == 0:
            raise HprofFormatError('Invalid basic type: %d' % type_id, self.tell())
        return decode_value(type_id, self.readBytes(size), self.size_of_identifier)

    def skip(self, length):
        start = self.tell()
        size = self.hprof.seek(0, os.SEEK_END)
        if start + length > size:
            raise HprofFormatError('Unexpected end of file: wanted %d bytes, got %d' % (length, size - start),
                                   size)
        self.hprof.seek(start + length)


def read_heap(stream, verbose=False):
    """Read a heap from a binary file-like object"""
    return HprofReader(stream, verbose).read()


def load_heap(path, verbose=False):
    """Open and index a heap dump file"""
    if not os.path.exists(path):
        raise HprofError(f"HPROF file not found at '{path}'")
    if verbose:
        print(f"Loading {path} ({os.path.getsize(path) / 1024 / 1024:.2f} MB)", file=sys.stderr)
    with open(path, 'rb') as f:
        heap = read_heap(f, verbose)
    if verbose:
        print(f"Loaded {len(heap.classes):,} classes, {len(heap.instances):,} instances", file=sys.stderr)
    return heap
