import io

import pytest

from heapwalk.heap import TYPE_OBJECT
from heapwalk.hprof_reader import read_heap
from hprof_writer import JavaHeapBuilder


def load(builder, **kwargs):
    return read_heap(io.BytesIO(builder.build(**kwargs)))


@pytest.fixture
def component_dump():
    """
    UI component tree:

        root (HtmlPanel, txt.literal="Hello\\nWorld")
        +- a (UIComponent)
        |  \\- c2 (HtmlPanel, linked through 'parent' only)
        \\- b (HtmlPanel, linked through 'compositeParent')
           \\- b1 (UIComponent)
        orphan (UIComponent)
    """
    w = JavaHeapBuilder()
    ui = w.define_class('javax/faces/component/UIComponent', w.object_class,
                        [('parent', TYPE_OBJECT), ('id', TYPE_OBJECT)])
    panel = w.define_class('com/example/ui/HtmlPanel', ui,
                           [('compositeParent', TYPE_OBJECT), ('txt', TYPE_OBJECT)])
    text = w.define_class('com/example/ui/Text', w.object_class, [('literal', TYPE_OBJECT)])

    def component(id_text, parent=0):
        return w.instance(ui, [(TYPE_OBJECT, parent), (TYPE_OBJECT, w.java_string(id_text))])

    def html_panel(id_text, composite_parent=0, txt=0, parent=0):
        return w.instance(panel, [(TYPE_OBJECT, composite_parent), (TYPE_OBJECT, txt),
                                  (TYPE_OBJECT, parent), (TYPE_OBJECT, w.java_string(id_text))])

    label = w.instance(text, [(TYPE_OBJECT, w.java_string('Hello\nWorld'))])
    ids = {}
    ids['root'] = html_panel('root', txt=label)
    ids['a'] = component('a', ids['root'])
    ids['b'] = html_panel('b', composite_parent=ids['root'])
    ids['b1'] = component('b1', ids['b'])
    ids['orphan'] = component('orphan')
    ids['c2'] = html_panel('c2', parent=ids['a'])
    w.root_sticky_class(ui)
    w.root_java_frame(ids['root'])
    return w, ids


@pytest.fixture
def component_heap(component_dump):
    w, ids = component_dump
    return load(w), ids


@pytest.fixture
def char_heap():
    """Only char[] payloads: three 'dup', two 'x' and one 100-char value"""
    w = JavaHeapBuilder()
    for _ in range(3):
        w.char_array('dup')
    w.char_array('x')
    w.char_array('x')
    long_id = w.char_array('a' * 100)
    return load(w), long_id
