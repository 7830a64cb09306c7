"""
Read-only view over a composed YAML document.

The loader works on node trees from ``yaml.compose`` rather than plain Python
objects so that every session and transaction can be reported with its source
line.
"""

from typing import Any, Iterator, Optional

import yaml


class TraceNode:
    """Wrapper around a PyYAML node with mapping/sequence/scalar helpers."""

    __slots__ = ('node',)

    def __init__(self, node: yaml.Node):
        self.node = node

    @property
    def line(self) -> int:
        """1-based source line of the node."""
        return self.node.start_mark.line + 1

    @property
    def is_scalar(self) -> bool:
        return isinstance(self.node, yaml.ScalarNode)

    @property
    def is_sequence(self) -> bool:
        return isinstance(self.node, yaml.SequenceNode)

    @property
    def is_mapping(self) -> bool:
        return isinstance(self.node, yaml.MappingNode)

    @property
    def scalar(self) -> str:
        """Scalar text. Empty for non-scalar nodes."""
        if self.is_scalar:
            return self.node.value
        return ''

    def get(self, key: str) -> Optional['TraceNode']:
        """Child of a mapping node by key, or None."""
        if not self.is_mapping:
            return None
        for key_node, value_node in self.node.value:
            if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
                return TraceNode(value_node)
        return None

    def __getitem__(self, key: str) -> Optional['TraceNode']:
        return self.get(key)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __iter__(self) -> Iterator['TraceNode']:
        if self.is_sequence:
            for child in self.node.value:
                yield TraceNode(child)

    def __len__(self) -> int:
        if self.is_sequence or self.is_mapping:
            return len(self.node.value)
        return 0

    def to_python(self) -> Any:
        """Plain Python value; scalars stay strings."""
        if self.is_scalar:
            return self.node.value
        if self.is_sequence:
            return [child.to_python() for child in self]
        if self.is_mapping:
            return {
                TraceNode(k).to_python(): TraceNode(v).to_python()
                for k, v in self.node.value
            }
        return None


def compose_trace(stream) -> Optional[TraceNode]:
    """
    Compose a YAML (or JSON) document into a TraceNode tree.

    Args:
        stream: str or open file

    Returns:
        Root TraceNode, or None for an empty document

    Raises:
        yaml.YAMLError: On syntax errors
    """
    root = yaml.compose(stream, Loader=yaml.SafeLoader)
    if root is None:
        return None
    return TraceNode(root)
