#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Heap walker

On-demand field resolution over a loaded Heap:
- value_of(instance, 'txt.literal') follows references by field name
- '[n]' path segments index object and primitive arrays
- java.lang.String and boxed primitives are converted to Python values
"""

import re

from heapwalk.heap import (
    TYPE_BYTE, TYPE_CHAR, Instance, JavaClass, ObjectArrayInstance,
    PrimitiveArrayInstance,
)

BOXED_TYPES = {
    'java.lang.Boolean',
    'java.lang.Byte',
    'java.lang.Character',
    'java.lang.Short',
    'java.lang.Integer',
    'java.lang.Long',
    'java.lang.Float',
    'java.lang.Double',
}

_PATH_TOKEN = re.compile(r'([^.\[\]]+)|\[(\d+)\]')


def parse_path(path):
    """
    Split a field path into name and index steps.

    'a.b[2].c' -> ['a', 'b', 2, 'c']
    """
    steps = []
    pos = 0
    while pos < len(path):
        if path[pos] == '.':
            pos += 1
            continue
        m = _PATH_TOKEN.match(path, pos)
        if not m:
            raise ValueError(f"Invalid field path: {path!r}")
        steps.append(m.group(1) if m.group(1) is not None else int(m.group(2)))
        pos = m.end()
    if not steps:
        raise ValueError(f"Invalid field path: {path!r}")
    return steps


def _deref(heap, object_id):
    if object_id == 0:
        return None
    obj = heap.get_instance(object_id)
    if obj is None:
        obj = heap.get_java_class(object_id)
    return obj


def _step(current, step):
    if isinstance(step, int):
        if isinstance(current, ObjectArrayInstance):
            if step >= current.length:
                return None
            return _deref(current.heap, current.elements[step])
        if isinstance(current, PrimitiveArrayInstance):
            values = current.values()
            if values is None or step >= len(values):
                return None
            return values[step]
        return None

    if isinstance(current, JavaClass):
        for fv in current.static_fields:
            if fv.field.name == step:
                return _deref(current.heap, fv.value) if fv.field.is_object else fv.value
        return None

    fv = current.get_field(step)
    if fv is None:
        return None
    if fv.field.is_object:
        return _deref(current.heap, fv.value)
    return fv.value


def resolve(instance, path):
    """Follow a field path without converting the result; None when any step is missing"""
    current = instance
    for step in parse_path(path):
        if not isinstance(current, (Instance, JavaClass)):
            return None
        current = _step(current, step)
        if current is None:
            return None
    return current


def value_of(instance, path):
    return convert(resolve(instance, path))


def convert(value):
    """Map strings and boxed primitives to Python values, leave other objects as is"""
    if not isinstance(value, Instance) or value.is_array:
        return value
    class_name = value.java_class.name
    if class_name == 'java.lang.String':
        return string_value(value)
    if class_name in BOXED_TYPES:
        fv = value.get_field('value')
        return fv.value if fv is not None else None
    return value


def string_value(instance):
    """Content of a java.lang.String instance, or None when it cannot be decoded"""
    fv = instance.get_field('value')
    if fv is None or not fv.field.is_object:
        return None
    array = instance.heap.get_instance(fv.value)
    if not isinstance(array, PrimitiveArrayInstance) or array.data is None:
        return None

    if array.element_type == TYPE_CHAR:
        text = array.data.decode('utf-16-be', 'replace')
        offset = instance.get_field('offset')
        count = instance.get_field('count')
        if offset is not None and count is not None and count.value <= len(text):
            text = text[offset.value:offset.value + count.value]
        return text

    if array.element_type == TYPE_BYTE:
        coder = instance.get_field('coder')
        if coder is not None and coder.value != 0:
            # compact strings: UTF16 coder stores chars in native (little-endian) order
            return array.data.decode('utf-16-le', 'replace')
        return array.data.decode('latin-1')

    return None


def primitive_array_value(instance):
    """Python value of a primitive array: str for char[], bytes for byte[], tuple otherwise"""
    if not isinstance(instance, PrimitiveArrayInstance) or instance.data is None:
        return None
    if instance.element_type == TYPE_CHAR:
        return instance.data.decode('utf-16-be', 'replace')
    if instance.element_type == TYPE_BYTE:
        return bytes(instance.data)
    return instance.values()


def value_to_string(value):
    if value is None:
        return 'null'
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('latin-1')
    if isinstance(value, (tuple, list)):
        return '[' + ', '.join(value_to_string(v) for v in value) + ']'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)
