#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Heap model

Class table and instance table built from an HPROF dump:
- JavaClass: runtime type with superclass chain and field layout
- Instance / ObjectArrayInstance / PrimitiveArrayInstance: heap objects
- Heap: lookup by id, by class name, and enumeration in dump order
"""

import struct
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class HprofError(Exception):
    """Base error for heap dump processing"""


class HprofFormatError(HprofError):
    """Malformed or truncated HPROF data"""

    def __init__(self, message, offset=None):
        if offset is not None:
            message = f"{message} (offset {offset})"
        super().__init__(message)
        self.offset = offset


# HPROF basic type ids
TYPE_OBJECT = 2
TYPE_BOOLEAN = 4
TYPE_CHAR = 5
TYPE_FLOAT = 6
TYPE_DOUBLE = 7
TYPE_BYTE = 8
TYPE_SHORT = 9
TYPE_INT = 10
TYPE_LONG = 11

# type id -> (size, name, struct format); object size depends on the dump
BASIC_TYPES = {
    TYPE_BOOLEAN: (1, 'boolean', '?'),
    TYPE_CHAR: (2, 'char', 'H'),
    TYPE_FLOAT: (4, 'float', 'f'),
    TYPE_DOUBLE: (8, 'double', 'd'),
    TYPE_BYTE: (1, 'byte', 'b'),
    TYPE_SHORT: (2, 'short', 'h'),
    TYPE_INT: (4, 'int', 'i'),
    TYPE_LONG: (8, 'long', 'q'),
}

PRIMITIVE_DESCRIPTORS = {
    'Z': 'boolean',
    'C': 'char',
    'F': 'float',
    'D': 'double',
    'B': 'byte',
    'S': 'short',
    'I': 'int',
    'J': 'long',
}

GC_ROOT_NAMES = {
    0xFF: 'UNKNOWN',
    0x01: 'JNI_GLOBAL',
    0x02: 'JNI_LOCAL',
    0x03: 'JAVA_FRAME',
    0x04: 'NATIVE_STACK',
    0x05: 'STICKY_CLASS',
    0x06: 'THREAD_BLOCK',
    0x07: 'MONITOR_USED',
    0x08: 'THREAD_OBJ',
    0x89: 'INTERNED_STRING',
    0x8a: 'FINALIZING',
    0x8b: 'DEBUGGER',
    0x8c: 'REFERENCE_CLEANUP',
    0x8d: 'VM_INTERNAL',
    0x8e: 'JNI_MONITOR',
    0x90: 'UNREACHABLE',
}


def type_size(type_id, id_size):
    if type_id == TYPE_OBJECT:
        return id_size
    return BASIC_TYPES.get(type_id, (0, '', ''))[0]


def type_name(type_id):
    if type_id == TYPE_OBJECT:
        return 'object'
    return BASIC_TYPES.get(type_id, (0, 'unknown', ''))[1]


def decode_value(type_id, data, id_size):
    """Decode a single big-endian basic value"""
    if type_id == TYPE_OBJECT:
        return int.from_bytes(data, byteorder='big', signed=False)
    _, _, fmt = BASIC_TYPES[type_id]
    value = struct.unpack('>' + fmt, data)[0]
    if type_id == TYPE_CHAR:
        return chr(value)
    return value


def normalize_class_name(name):
    """
    Convert a JVM class name to Java source form.

    java/lang/String    -> java.lang.String
    [C                  -> char[]
    [[Ljava/lang/Byte;  -> java.lang.Byte[][]
    """
    dims = 0
    while name.startswith('['):
        dims += 1
        name = name[1:]
    if dims:
        if name.startswith('L') and name.endswith(';'):
            name = name[1:-1]
        elif name in PRIMITIVE_DESCRIPTORS:
            name = PRIMITIVE_DESCRIPTORS[name]
    return name.replace('/', '.') + '[]' * dims


def simple_name(name):
    c = name.rfind('.')
    return name if c < 0 else name[c + 1:]


@dataclass
class FieldDef:
    """Declared field of a class"""
    name: str
    type: int

    @property
    def is_object(self) -> bool:
        return self.type == TYPE_OBJECT


@dataclass
class FieldValue:
    """Field of a concrete instance with its decoded value"""
    field: FieldDef
    value: object

    def __str__(self):
        return f"{self.field.name} => {self.value}"


class JavaClass:
    """Runtime type of heap objects"""

    def __init__(self, heap, class_id, name, super_class_id=0, instance_size=0,
                 fields=None, static_fields=None, class_loader_id=0):
        self.heap = heap
        self.id = class_id
        self.name = name
        self.super_class_id = super_class_id
        self.class_loader_id = class_loader_id
        self.instance_size = instance_size
        self.fields: List[FieldDef] = fields or []
        self.static_fields: List[FieldValue] = static_fields or []
        self._all_fields = None

    def __repr__(self):
        return f"<JavaClass {self.name} id=0x{self.id:x}>"

    @property
    def is_array(self) -> bool:
        return self.name.endswith('[]')

    @property
    def super_class(self) -> Optional['JavaClass']:
        if not self.super_class_id:
            return None
        return self.heap.get_java_class(self.super_class_id)

    def all_fields(self) -> List[FieldDef]:
        """Instance fields in dump order: own fields first, then superclasses"""
        if self._all_fields is None:
            fields = []
            seen = set()
            jc = self
            while jc is not None and jc.id not in seen:
                seen.add(jc.id)
                fields.extend(jc.fields)
                jc = jc.super_class
            self._all_fields = fields
        return self._all_fields

    def is_subclass_of(self, name) -> bool:
        seen = set()
        jc = self
        while jc is not None and jc.id not in seen:
            if jc.name == name:
                return True
            seen.add(jc.id)
            jc = jc.super_class
        return False

    def get_static_value(self, name):
        for fv in self.static_fields:
            if fv.field.name == name:
                return fv.value
        return None


class Instance:
    """Plain object instance; field values are decoded on demand"""

    def __init__(self, heap, instance_id, java_class, data, size):
        self.heap = heap
        self.id = instance_id
        self.java_class = java_class
        self.data = data
        self.size = size
        self._values = None

    def __repr__(self):
        return f"<{self.java_class.name} 0x{self.id:x}>"

    def __eq__(self, other):
        return isinstance(other, Instance) and other.id == self.id

    def __hash__(self):
        return hash(self.id)

    @property
    def is_array(self) -> bool:
        return False

    def field_values(self) -> List[FieldValue]:
        if self._values is None:
            id_size = self.heap.id_size
            values = []
            offset = 0
            for fd in self.java_class.all_fields():
                size = type_size(fd.type, id_size)
                if size == 0 or offset + size > len(self.data):
                    break
                values.append(FieldValue(fd, decode_value(fd.type, self.data[offset:offset + size], id_size)))
                offset += size
            self._values = values
        return self._values

    def get_field(self, name) -> Optional[FieldValue]:
        """First field with the given name, nearest class wins"""
        for fv in self.field_values():
            if fv.field.name == name:
                return fv
        return None


class ObjectArrayInstance(Instance):

    def __init__(self, heap, instance_id, java_class, elements, size):
        super().__init__(heap, instance_id, java_class, None, size)
        self.elements = elements

    @property
    def is_array(self) -> bool:
        return True

    @property
    def length(self) -> int:
        return len(self.elements)

    def field_values(self) -> List[FieldValue]:
        return []


class PrimitiveArrayInstance(Instance):

    def __init__(self, heap, instance_id, java_class, element_type, length, data, size):
        super().__init__(heap, instance_id, java_class, data, size)
        self.element_type = element_type
        self.length = length

    @property
    def is_array(self) -> bool:
        return True

    def field_values(self) -> List[FieldValue]:
        return []

    def values(self):
        """Decoded elements, or None for arrays dumped without data"""
        if self.data is None:
            return None
        size, _, fmt = BASIC_TYPES[self.element_type]
        count = min(self.length, len(self.data) // size)
        values = struct.unpack(f'>{count}{fmt}', self.data[:count * size])
        if self.element_type == TYPE_CHAR:
            return tuple(chr(v) for v in values)
        return values


@dataclass
class GcRoot:
    object_id: int
    type: int
    extra: Dict[str, int] = field(default_factory=dict)

    @property
    def type_name(self) -> str:
        return GC_ROOT_NAMES.get(self.type, f'UNKNOWN_{self.type}')


class Heap:
    """Indexed heap dump"""

    def __init__(self, version='', id_size=4, timestamp=0):
        self.version = version
        self.id_size = id_size
        self.timestamp = timestamp
        self.strings: Dict[int, str] = {}
        self.classes: Dict[int, JavaClass] = {}
        self.instances: Dict[int, Instance] = {}
        self.gc_roots: Dict[int, GcRoot] = {}
        self._classes_by_name = None

    def __repr__(self):
        return (f"<Heap {self.version!r} id-size={self.id_size} "
                f"classes={len(self.classes)} instances={len(self.instances)}>")

    @property
    def object_header_size(self) -> int:
        return 16 if self.id_size == 8 else 8

    @property
    def array_header_size(self) -> int:
        return 24 if self.id_size == 8 else 12

    def add_class(self, java_class):
        self.classes[java_class.id] = java_class
        self._classes_by_name = None

    def get_all_classes(self) -> List[JavaClass]:
        return list(self.classes.values())

    def get_all_instances(self):
        return self.instances.values()

    def get_instance(self, instance_id) -> Optional[Instance]:
        return self.instances.get(instance_id)

    def get_java_class(self, class_id) -> Optional[JavaClass]:
        return self.classes.get(class_id)

    def find_class(self, name) -> Optional[JavaClass]:
        if self._classes_by_name is None:
            by_name = {}
            for jc in self.classes.values():
                by_name.setdefault(jc.name, jc)
            self._classes_by_name = by_name
        return self._classes_by_name.get(name)

    def get_string(self, string_id, default='unknown'):
        return self.strings.get(string_id, default)

    def gc_root_statistics(self) -> Dict[str, int]:
        stats = defaultdict(int)
        for root in self.gc_roots.values():
            stats[root.type_name] += 1
        return dict(sorted(stats.items(), key=lambda x: x[1], reverse=True))

    def summary(self):
        total_size = 0
        array_count = 0
        for inst in self.instances.values():
            total_size += inst.size
            if inst.is_array:
                array_count += 1
        return {
            'version': self.version,
            'id_size': self.id_size,
            'timestamp': self.timestamp,
            'classes': len(self.classes),
            'instances': len(self.instances),
            'arrays': array_count,
            'total_size': total_size,
            'gc_roots': len(self.gc_roots),
        }
