import io
import struct

import pytest

from heapwalk.heap import (
    TYPE_BOOLEAN, TYPE_BYTE, TYPE_CHAR, TYPE_DOUBLE, TYPE_INT, TYPE_LONG,
    TYPE_OBJECT, TYPE_SHORT, HprofError, HprofFormatError, ObjectArrayInstance,
    PrimitiveArrayInstance, normalize_class_name,
)
from heapwalk.hprof_reader import load_heap, read_heap
from hprof_writer import HprofWriter, JavaHeapBuilder


def parse(writer, **kwargs):
    return read_heap(io.BytesIO(writer.build(**kwargs)))


@pytest.mark.parametrize('raw, expected', [
    ('java/lang/String', 'java.lang.String'),
    ('[C', 'char[]'),
    ('[[I', 'int[][]'),
    ('[J', 'long[]'),
    ('[Ljava/lang/Object;', 'java.lang.Object[]'),
    ('[[Ljava/util/Map$Entry;', 'java.util.Map$Entry[][]'),
    ('com.example.Already', 'com.example.Already'),
])
def test_normalize_class_name(raw, expected):
    assert normalize_class_name(raw) == expected


def test_header():
    w = HprofWriter(version='JAVA PROFILE 1.0.3', timestamp=1234)
    heap = parse(w)
    assert heap.version == 'JAVA PROFILE 1.0.3'
    assert heap.id_size == 4
    assert heap.timestamp == 1234
    assert heap.get_all_classes() == []
    assert len(heap.instances) == 0


@pytest.mark.parametrize('id_size', [4, 8])
def test_classes_and_fields(id_size):
    w = JavaHeapBuilder(id_size=id_size)
    point = w.define_class('com/example/Point', w.object_class,
                           [('x', TYPE_INT), ('y', TYPE_INT), ('label', TYPE_OBJECT)],
                           statics=[('ORIGIN_COUNT', TYPE_LONG, 7)])
    label = w.java_string('p')
    obj = w.instance(point, [(TYPE_INT, 3), (TYPE_INT, -4), (TYPE_OBJECT, label)])
    heap = parse(w)

    jc = heap.find_class('com.example.Point')
    assert jc.id == point
    assert jc.super_class.name == 'java.lang.Object'
    assert [f.name for f in jc.fields] == ['x', 'y', 'label']
    assert jc.get_static_value('ORIGIN_COUNT') == 7

    inst = heap.get_instance(obj)
    assert inst.java_class is jc
    values = {fv.field.name: fv.value for fv in inst.field_values()}
    assert values == {'x': 3, 'y': -4, 'label': label}
    header = 16 if id_size == 8 else 8
    assert inst.size == header + 8 + id_size


def test_inherited_fields_follow_own_fields():
    w = JavaHeapBuilder()
    base = w.define_class('com/example/Base', w.object_class, [('base', TYPE_INT)])
    derived = w.define_class('com/example/Derived', base, [('own', TYPE_SHORT)])
    obj = w.instance(derived, [(TYPE_SHORT, 5), (TYPE_INT, 99)])
    heap = parse(w)

    inst = heap.get_instance(obj)
    assert [f.name for f in inst.java_class.all_fields()] == ['own', 'base']
    assert inst.get_field('own').value == 5
    assert inst.get_field('base').value == 99
    assert inst.java_class.is_subclass_of('com.example.Base')
    assert inst.java_class.is_subclass_of('java.lang.Object')
    assert not inst.java_class.is_subclass_of('java.lang.String')


def test_basic_value_decoding():
    w = JavaHeapBuilder()
    cls = w.define_class('com/example/All', w.object_class,
                         [('z', TYPE_BOOLEAN), ('c', TYPE_CHAR), ('b', TYPE_BYTE),
                          ('d', TYPE_DOUBLE), ('j', TYPE_LONG)])
    obj = w.instance(cls, [(TYPE_BOOLEAN, True), (TYPE_CHAR, 'Z'), (TYPE_BYTE, -2),
                           (TYPE_DOUBLE, 2.5), (TYPE_LONG, -(1 << 40))])
    heap = parse(w)
    values = {fv.field.name: fv.value for fv in heap.get_instance(obj).field_values()}
    assert values == {'z': True, 'c': 'Z', 'b': -2, 'd': 2.5, 'j': -(1 << 40)}


def test_arrays():
    w = JavaHeapBuilder()
    ints = w.primitive_array(TYPE_INT, [1, 2, 3])
    chars = w.char_array('hey')
    nodata = w.nodata_array(TYPE_LONG, 10)
    objs = w.object_array(w.object_array_class, [ints, 0, chars])
    heap = parse(w)

    int_arr = heap.get_instance(ints)
    assert isinstance(int_arr, PrimitiveArrayInstance)
    assert int_arr.java_class.name == 'int[]'
    assert int_arr.values() == (1, 2, 3)
    assert int_arr.size == 12 + 12

    char_arr = heap.get_instance(chars)
    assert char_arr.java_class is heap.find_class('char[]')
    assert char_arr.java_class.id == w.char_array_class
    assert char_arr.values() == ('h', 'e', 'y')

    nodata_arr = heap.get_instance(nodata)
    assert nodata_arr.data is None
    assert nodata_arr.values() is None
    assert nodata_arr.length == 10

    obj_arr = heap.get_instance(objs)
    assert isinstance(obj_arr, ObjectArrayInstance)
    assert obj_arr.java_class.name == 'java.lang.Object[]'
    assert obj_arr.elements == [ints, 0, chars]
    assert obj_arr.size == 12 + 3 * 4
    assert obj_arr.field_values() == []


def test_synthetic_array_class_extends_object():
    w = JavaHeapBuilder()
    shorts = w.primitive_array(TYPE_SHORT, [1])
    heap = parse(w)
    jc = heap.get_instance(shorts).java_class
    assert jc.name == 'short[]'
    assert jc.id < 0
    assert jc.super_class.name == 'java.lang.Object'
    assert heap.find_class('short[]') is jc


def test_instances_keep_dump_order():
    w = JavaHeapBuilder()
    ids = [w.char_array(c) for c in 'abc']
    heap = parse(w)
    assert [i.id for i in heap.get_all_instances()] == ids


def test_gc_roots_and_dump_info():
    w = JavaHeapBuilder()
    obj = w.java_string('rooted')
    w.heap_dump_info()
    w.root_sticky_class(w.string_class)
    w.root_jni_global(obj, 0x77)
    w.root_thread_object(w.char_array('t'), thread_serial=3)
    w.root_sticky_class(0)
    heap = parse(w, segment_tag=0x0C)

    assert len(heap.gc_roots) == 3
    assert heap.gc_roots[obj].type_name == 'JNI_GLOBAL'
    assert heap.gc_roots[obj].extra == {'jni_ref_id': 0x77}
    assert heap.gc_root_statistics() == {'STICKY_CLASS': 1, 'JNI_GLOBAL': 1, 'THREAD_OBJ': 1}


def test_unknown_top_level_record_is_skipped():
    w = JavaHeapBuilder()
    w.record(0x42, b'\x01\x02\x03')
    obj = w.char_array('ok')
    heap = parse(w)
    assert heap.get_instance(obj) is not None


def test_constant_pool_is_skipped():
    w = JavaHeapBuilder()
    cls = w.load_class('com/example/Consts')
    w.class_dump(cls, w.object_class, [('v', TYPE_INT)], constants=[(1, TYPE_INT, 5), (2, TYPE_OBJECT, 0)])
    obj = w.instance(cls, [(TYPE_INT, 11)])
    heap = parse(w)
    assert heap.get_instance(obj).get_field('v').value == 11


def test_reads_without_end_record():
    w = JavaHeapBuilder()
    obj = w.char_array('no end')
    heap = parse(w, end=False)
    assert heap.get_instance(obj).length == 6


def test_not_an_hprof_file():
    with pytest.raises(HprofFormatError, match='Not an HPROF file'):
        read_heap(io.BytesIO(b'PK\x03\x04 something\x00'))


def test_unsupported_identifier_size():
    data = b'JAVA PROFILE 1.0.2\x00' + struct.pack('>IQ', 2, 0)
    with pytest.raises(HprofFormatError, match='identifier size'):
        read_heap(io.BytesIO(data))


def test_truncated_file_reports_offset():
    w = JavaHeapBuilder()
    w.char_array('truncated payload')
    data = w.build()
    with pytest.raises(HprofFormatError) as exc_info:
        read_heap(io.BytesIO(data[:-20]))
    assert exc_info.value.offset is not None
    assert isinstance(exc_info.value, HprofError)


@pytest.mark.parametrize('tag', [0x03, 0x05, 0x2C, 0x42])
def test_truncated_skipped_record(tag):
    w = JavaHeapBuilder()
    w.char_array('ok')
    data = w.build(end=False) + struct.pack('>BII', tag, 0, 100) + b'\x00' * 4
    with pytest.raises(HprofFormatError, match='Unexpected end of file: wanted 100 bytes, got 4') as exc_info:
        read_heap(io.BytesIO(data))
    assert exc_info.value.offset == len(data)


@pytest.mark.parametrize('data', [
    b'JAVA PROFI',
    b'JAVA PROFILE 1.0.2\x00\x00\x00',
    b'JAVA PROFILE 1.0.2\x00\x00\x00\x00\x04\x00\x00',
])
def test_truncated_header(data):
    with pytest.raises(HprofFormatError, match='Unexpected end of file'):
        read_heap(io.BytesIO(data))


def test_verbose_notes_unknown_record(capsys):
    w = JavaHeapBuilder()
    w.record(0x42, b'\x01\x02\x03')
    heap = read_heap(io.BytesIO(w.build()), verbose=True)
    assert heap.find_class('char[]') is not None
    assert 'Skipping unknown record tag 0x42' in capsys.readouterr().err


def test_verbose_with_out_of_range_timestamp(tmp_path, capsys):
    w = JavaHeapBuilder(timestamp=(1 << 64) - 1)
    obj = w.char_array('late')
    path = w.write(tmp_path / 'dump.hprof')
    heap = load_heap(str(path), verbose=True)
    assert heap.get_instance(obj) is not None
    assert heap.timestamp == (1 << 64) - 1
    assert 'Timestamp: %d ms' % ((1 << 64) - 1) in capsys.readouterr().err


def test_unknown_heap_sub_record():
    w = JavaHeapBuilder()
    w.raw_heap_record(b'\x77\x00\x00')
    with pytest.raises(HprofFormatError, match='0x77'):
        parse(w)


def test_load_heap_missing_file(tmp_path):
    with pytest.raises(HprofError, match='not found'):
        load_heap(str(tmp_path / 'missing.hprof'))


def test_load_heap_from_disk(tmp_path, capsys):
    w = JavaHeapBuilder()
    obj = w.java_string('disk')
    path = w.write(tmp_path / 'dump.hprof')
    heap = load_heap(str(path), verbose=True)
    assert heap.get_instance(obj).java_class.name == 'java.lang.String'
    err = capsys.readouterr().err
    assert 'HPROF version: JAVA PROFILE 1.0.2' in err
    assert 'Identifier size: 4' in err


def test_summary():
    w = JavaHeapBuilder()
    w.char_array('ab')
    w.java_string('c')
    heap = parse(w)
    summary = heap.summary()
    assert summary['instances'] == 3
    assert summary['arrays'] == 2
    # two char[] (12 + 4, 12 + 2) and one String (8 + 8)
    assert summary['total_size'] == 16 + 14 + 16
    assert summary['classes'] == 6
