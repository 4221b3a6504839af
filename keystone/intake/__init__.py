"""
Keystone Intake Module

This module parses desired-state documents (HCL or JSON) and builds the
validated resource graph that planning works from.
"""

from .graph import GraphBuilder, ResourceGraph
from .parser import (
    Document,
    OutputSource,
    Parser,
    ResourceDeclaration,
    VariableDeclaration,
)
from ..errors import ParseError

__all__ = [
    "Document",
    "GraphBuilder",
    "OutputSource",
    "ParseError",
    "Parser",
    "ResourceDeclaration",
    "ResourceGraph",
    "VariableDeclaration",
]
