"""
Desired-state document parser.

This module reads desired-state documents written in HCL (``.hcl``/``.tf``,
parsed with python-hcl2) or in the equivalent JSON structure (``.json``) and
normalizes them into a Document of resource, variable and output
declarations for the graph builder.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import hcl2
from pydantic import BaseModel, Field

from ..errors import ParseError

logger = logging.getLogger(__name__)

HCL_SUFFIXES = (".hcl", ".tf")
JSON_SUFFIXES = (".json",)
IGNORED_BLOCKS = {"terraform", "provider", "locals"}


class ResourceDeclaration(BaseModel):
    """A `resource "<type>" "<name>" { ... }` block."""
    type: str
    name: str
    body: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class VariableDeclaration(BaseModel):
    """A `variable "<name>" { ... }` block."""
    name: str
    type: Optional[str] = None
    default: Any = None
    has_default: bool = False
    description: Optional[str] = None


class OutputSource(BaseModel):
    """An `output "<name>" { ... }` block before reference conversion."""
    name: str
    value: Any = None
    description: Optional[str] = None
    sensitive: bool = False


class Document(BaseModel):
    """Normalized desired-state document."""
    resources: List[ResourceDeclaration] = Field(default_factory=list)
    variables: Dict[str, VariableDeclaration] = Field(default_factory=dict)
    outputs: Dict[str, OutputSource] = Field(default_factory=dict)
    sources: List[str] = Field(default_factory=list)

    def merge(self, other: "Document") -> "Document":
        """
        Combine two documents.

        Resources are concatenated so that duplicates surface in the graph
        builder; duplicate variables or outputs are parse errors.
        """
        for name in other.variables:
            if name in self.variables:
                raise ParseError(f"Variable '{name}' is declared more than once", other.sources[0] if other.sources else None)
        for name in other.outputs:
            if name in self.outputs:
                raise ParseError(f"Output '{name}' is declared more than once", other.sources[0] if other.sources else None)
        return Document(
            resources=self.resources + other.resources,
            variables={**self.variables, **other.variables},
            outputs={**self.outputs, **other.outputs},
            sources=self.sources + other.sources,
        )


class Parser:
    """
    Parser for desired-state documents.

    Handles parsing of HCL and JSON documents into plain dictionaries and
    converts them to a normalized Document.
    """

    def __init__(self):
        self.parsed_files: Dict[str, Dict[str, Any]] = {}

    def parse_file(self, file_path: Union[str, Path]) -> Document:
        """
        Parse a single desired-state document.

        Args:
            file_path: Path to a .hcl, .tf or .json document

        Returns:
            Normalized Document

        Raises:
            ParseError: If the file is missing, unreadable or malformed
        """
        file_path = Path(file_path)

        if not file_path.is_file():
            raise ParseError("Document not found", str(file_path))

        suffix = file_path.suffix.lower()
        if suffix not in HCL_SUFFIXES + JSON_SUFFIXES:
            raise ParseError(f"Expected .hcl, .tf or .json file, got '{file_path.suffix}'", str(file_path))

        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read document: {e}", str(file_path)) from e

        data = self._load(content, "json" if suffix in JSON_SUFFIXES else "hcl", str(file_path))
        self.parsed_files[str(file_path)] = data
        return self.to_document(data, str(file_path))

    def parse_string(self, content: str, format: str = "hcl", source: Optional[str] = None) -> Document:
        """
        Parse document content from a string.

        Args:
            content: Document text
            format: "hcl" or "json"
            source: Optional name used in error messages

        Returns:
            Normalized Document
        """
        if format not in ("hcl", "json"):
            raise ParseError(f"Unsupported document format '{format}'", source)
        return self.to_document(self._load(content, format, source), source)

    def parse_paths(self, paths: Iterable[Union[str, Path]]) -> Document:
        """Parse files and directories and merge them into one Document."""
        document = Document()
        for path in paths:
            path = Path(path)
            if path.is_dir():
                document = document.merge(self.parse_directory(path))
            else:
                document = document.merge(self.parse_file(path))
        return document

    def parse_directory(self, directory_path: Union[str, Path]) -> Document:
        """
        Parse all .hcl and .tf documents of a directory into one Document.

        Raises:
            ParseError: If the directory holds no document or any file is malformed
        """
        directory_path = Path(directory_path)
        files = sorted(
            path for path in directory_path.iterdir()
            if path.is_file() and path.suffix.lower() in HCL_SUFFIXES
        )
        if not files:
            raise ParseError("No .hcl or .tf documents found", str(directory_path))

        document = Document()
        for file_path in files:
            document = document.merge(self.parse_file(file_path))
        return document

    def _load(self, content: str, format: str, source: Optional[str]) -> Dict[str, Any]:
        try:
            if format == "json":
                data = json.loads(content)
            else:
                data = hcl2.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}", source) from e
        except Exception as e:
            # python-hcl2 surfaces lark exceptions for syntax errors
            raise ParseError(f"Invalid HCL syntax: {e}", source) from e

        if not isinstance(data, dict):
            raise ParseError("Document root must be a mapping", source)
        return _strip_meta(data)

    def to_document(self, data: Dict[str, Any], source: Optional[str] = None) -> Document:
        """
        Convert parsed data to a Document.

        Accepts both the HCL shape produced by python-hcl2 (blocks as lists of
        single-key mappings) and the JSON shape (blocks as nested mappings).

        Raises:
            ParseError: If a block has an unexpected shape
        """
        document = Document(sources=[source] if source else [])

        for block_type, blocks in data.items():
            if block_type in IGNORED_BLOCKS:
                logger.debug(f"Ignoring '{block_type}' block in {source}")
                continue
            for block in _iter_blocks(blocks, block_type, source):
                if block_type == "resource":
                    self._process_resources(block, document, source)
                elif block_type == "variable":
                    self._process_variables(block, document, source)
                elif block_type == "output":
                    self._process_outputs(block, document, source)
                else:
                    raise ParseError(f"Unsupported block type '{block_type}'", source)

        logger.debug(
            f"Parsed {len(document.resources)} resources, {len(document.variables)} variables, "
            f"{len(document.outputs)} outputs from {source or '<string>'}"
        )
        return document

    def _process_resources(self, block: Dict[str, Any], document: Document, source: Optional[str]) -> None:
        # resource "type" "name" { ... } is parsed as {"type": {"name": {...}}}
        for resource_type, instances in block.items():
            for instances_block in _iter_blocks(instances, f"resource '{resource_type}'", source):
                for resource_name, body in instances_block.items():
                    body = _single_block(body, f"resource '{resource_type}.{resource_name}'", source)
                    document.resources.append(ResourceDeclaration(
                        type=resource_type,
                        name=resource_name,
                        body=body,
                        source=source,
                    ))

    def _process_variables(self, block: Dict[str, Any], document: Document, source: Optional[str]) -> None:
        for var_name, body in block.items():
            body = _single_block(body, f"variable '{var_name}'", source)
            if var_name in document.variables:
                raise ParseError(f"Variable '{var_name}' is declared more than once", source)
            document.variables[var_name] = VariableDeclaration(
                name=var_name,
                type=_unwrap_type(body.get("type")),
                default=body.get("default"),
                has_default="default" in body,
                description=body.get("description"),
            )

    def _process_outputs(self, block: Dict[str, Any], document: Document, source: Optional[str]) -> None:
        for output_name, body in block.items():
            body = _single_block(body, f"output '{output_name}'", source)
            if "value" not in body:
                raise ParseError(f"Output '{output_name}' has no value", source)
            if output_name in document.outputs:
                raise ParseError(f"Output '{output_name}' is declared more than once", source)
            document.outputs[output_name] = OutputSource(
                name=output_name,
                value=body["value"],
                description=body.get("description"),
                sensitive=bool(body.get("sensitive", False)),
            )


def _strip_meta(value: Any) -> Any:
    """Drop python-hcl2 metadata keys such as __start_line__ and __is_block__."""
    if isinstance(value, dict):
        return {
            key: _strip_meta(item) for key, item in value.items()
            if not (isinstance(key, str) and key.startswith("__") and key.endswith("__"))
        }
    if isinstance(value, list):
        return [_strip_meta(item) for item in value]
    return value


def _iter_blocks(blocks: Any, what: str, source: Optional[str]) -> List[Dict[str, Any]]:
    if isinstance(blocks, dict):
        return [blocks]
    if isinstance(blocks, list) and all(isinstance(block, dict) for block in blocks):
        return blocks
    raise ParseError(f"Malformed {what} block", source)


def _single_block(body: Any, what: str, source: Optional[str]) -> Dict[str, Any]:
    if isinstance(body, list) and len(body) == 1:
        body = body[0]
    if not isinstance(body, dict):
        raise ParseError(f"Malformed {what} block", source)
    return body


def _unwrap_type(value: Any) -> Optional[str]:
    # hcl2 renders bare type keywords as "${string}"
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return value[2:-1].strip()
    return value
