#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
ASCII tree rendering

    root
    +-child
    | \\-grandchild
    \\-last
"""


class TextTree:

    def __init__(self, text, children=()):
        self.text = text
        self.children = list(children)

    @classmethod
    def t(cls, text, *children):
        return cls(text, children)

    def __repr__(self):
        return f"TextTree({self.text!r}, {len(self.children)} children)"

    def __str__(self):
        return self.print_as_tree()

    def print_as_tree(self):
        lines = [str(self.text)]
        # (siblings, next index, indent)
        stack = [(self.children, 0, '')]
        while stack:
            children, i, indent = stack.pop()
            if i >= len(children):
                continue
            stack.append((children, i + 1, indent))
            child = children[i]
            last = i == len(children) - 1
            lines.append(indent + ('\\-' if last else '+-') + str(child.text))
            stack.append((child.children, 0, indent + ('  ' if last else '| ')))
        return '\n'.join(lines)
