"""Schema management: loading, caching, and compilation to tagged nodes."""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests
from pydantic import BaseModel

from persuader.schema.nodes import SchemaNode, compile_schema

logger = logging.getLogger(__name__)


class SchemaNotFoundError(Exception):
    """Exception raised when a requested schema cannot be found."""

    pass


class SchemaValidationError(Exception):
    """Exception raised when a schema fails validation."""

    pass


@dataclass(frozen=True)
class CompiledSchema:
    """A declared schema together with its compiled node tree.

    Attributes:
        name: Schema name (model class name, title, or registered name)
        json_schema: The JSON schema the nodes were compiled from
        root: Root of the compiled node tree
        model: Pydantic model producing the typed value, if one was declared
    """

    name: str
    json_schema: dict[str, Any]
    root: SchemaNode
    model: type[BaseModel] | None = None


SchemaInput = str | dict[str, Any] | type[BaseModel] | CompiledSchema


class SchemaManager:
    """Manages JSON schemas with loading, caching, and compilation.

    Supports loading schemas from:
    - Local files in configured directories
    - URLs with caching
    - Runtime registration

    Pydantic models are compiled from their generated JSON schema and keep
    the model so successful validation yields a typed instance.
    """

    def __init__(self, schema_directories: list[str] | None = None) -> None:
        """Initialize SchemaManager.

        Args:
            schema_directories: Directories to search for schema files.
                               Defaults to ['schemas/'] if None.
        """
        self.schema_directories = schema_directories or ["schemas/"]
        self._schema_cache: dict[str, dict[str, Any]] = {}
        self._compiled_cache: dict[str, CompiledSchema] = {}
        self._model_cache: dict[type[BaseModel], CompiledSchema] = {}
        self._url_cache: dict[str, dict[str, Any]] = {}
        # Runs sharing one manager compile concurrently
        self._lock = threading.Lock()

    def load_schema(self, schema_name: str) -> dict[str, Any]:
        """Load a JSON schema by name.

        Args:
            schema_name: Name of the schema (without .json extension)

        Returns:
            JSON schema as dictionary

        Raises:
            SchemaNotFoundError: If schema cannot be found
            SchemaValidationError: If the schema file is not a valid schema
        """
        with self._lock:
            cached_dict = self._schema_cache.get(schema_name)
        if cached_dict is not None:
            return cached_dict

        for directory in self.schema_directories:
            schema_path = Path(directory) / f"{schema_name}.json"
            if schema_path.exists():
                try:
                    with open(schema_path, encoding="utf-8") as f:
                        schema_dict = json.load(f)
                except (json.JSONDecodeError, FileNotFoundError) as e:
                    raise SchemaValidationError(
                        f"Invalid schema file {schema_path}: {e}"
                    ) from e

                self._validate_schema(schema_dict)
                with self._lock:
                    self._schema_cache[schema_name] = schema_dict
                logger.debug("Loaded schema '%s' from %s", schema_name, schema_path)
                return schema_dict

        raise SchemaNotFoundError(
            f"Schema '{schema_name}' not found in directories: {self.schema_directories}"
        )

    def load_schema_from_url(self, url: str) -> dict[str, Any]:
        """Load a JSON schema from a URL.

        Args:
            url: URL to fetch schema from

        Returns:
            JSON schema as dictionary

        Raises:
            SchemaValidationError: If URL fetch or schema validation fails
        """
        with self._lock:
            cached_dict = self._url_cache.get(url)
        if cached_dict is not None:
            return cached_dict

        try:
            response = requests.get(url, timeout=30)
            response.raise_for_status()
            schema_dict = response.json()
        except requests.RequestException as e:
            raise SchemaValidationError(
                f"Failed to fetch schema from {url}: {e}"
            ) from e
        except json.JSONDecodeError as e:
            raise SchemaValidationError(f"Invalid JSON schema from {url}: {e}") from e

        self._validate_schema(schema_dict)
        with self._lock:
            self._url_cache[url] = schema_dict
        return schema_dict

    def register_schema(self, name: str, schema_dict: dict[str, Any]) -> None:
        """Register a schema at runtime.

        Args:
            name: Name to register schema under
            schema_dict: JSON schema as dictionary

        Raises:
            SchemaValidationError: If schema is invalid
        """
        self._validate_schema(schema_dict)
        with self._lock:
            self._schema_cache[name] = schema_dict
            self._compiled_cache.pop(name, None)

    def list_available_schemas(self) -> list[str]:
        """List all available schemas.

        Returns:
            List of schema names
        """
        schema_names = set()

        for directory in self.schema_directories:
            dir_path = Path(directory)
            if dir_path.exists():
                for schema_file in dir_path.glob("*.json"):
                    schema_names.add(schema_file.stem)

        with self._lock:
            schema_names.update(self._schema_cache.keys())

        return sorted(schema_names)

    def compile(self, schema_input: SchemaInput) -> CompiledSchema:
        """Resolve any accepted schema input into a ``CompiledSchema``.

        Args:
            schema_input: Pydantic model class, JSON schema dict, schema name,
                or an already compiled schema

        Returns:
            Compiled schema

        Raises:
            SchemaDefinitionException: If the schema description is malformed
            SchemaNotFoundError: If a named schema cannot be found
            TypeError: If the input is none of the accepted forms
        """
        if isinstance(schema_input, CompiledSchema):
            return schema_input

        if isinstance(schema_input, type) and issubclass(schema_input, BaseModel):
            with self._lock:
                cached = self._model_cache.get(schema_input)
            if cached is None:
                json_schema = schema_input.model_json_schema()
                compiled = CompiledSchema(
                    name=schema_input.__name__,
                    json_schema=json_schema,
                    root=compile_schema(json_schema),
                    model=schema_input,
                )
                with self._lock:
                    cached = self._model_cache.setdefault(schema_input, compiled)
            return cached

        if isinstance(schema_input, dict):
            return CompiledSchema(
                name=str(schema_input.get("title", "DynamicSchema")),
                json_schema=schema_input,
                root=compile_schema(schema_input),
            )

        if isinstance(schema_input, str):
            with self._lock:
                cached = self._compiled_cache.get(schema_input)
            if cached is not None:
                return cached
            schema_dict = self.load_schema(schema_input)
            compiled = CompiledSchema(
                name=schema_input,
                json_schema=schema_dict,
                root=compile_schema(schema_dict),
            )
            with self._lock:
                return self._compiled_cache.setdefault(schema_input, compiled)

        raise TypeError(
            "Schema must be a pydantic model class, a JSON schema dict, or a "
            f"schema name, got {type(schema_input).__name__}"
        )

    def _validate_schema(self, schema_dict: dict[str, Any]) -> None:
        """Validate that a dictionary looks like a JSON schema.

        Args:
            schema_dict: Dictionary to validate

        Raises:
            SchemaValidationError: If schema is invalid
        """
        if not isinstance(schema_dict, dict):
            raise SchemaValidationError("Schema must be a dictionary")

        if "type" not in schema_dict and "$ref" not in schema_dict:
            raise SchemaValidationError("Schema must have 'type' or '$ref' field")
