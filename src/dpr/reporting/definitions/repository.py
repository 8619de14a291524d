# src/dpr/reporting/definitions/repository.py
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic
import yaml

from dpr.reporting.core.config import settings
from dpr.reporting.core.errors import DefinitionError, ValidationError
from dpr.reporting.definitions.models import (
    ProductDefinition,
    SingleReportProductDefinition,
)

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


def load_definition_file(path: Path) -> ProductDefinition:
    """Parse a single product definition document.

    JSON documents are read through the YAML loader, which accepts them
    unchanged.
    """
    if not path.exists():
        raise DefinitionError(f"Definition file does not exist: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            raw: Dict[str, Any] = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Unreadable definition {path.name}: {exc}") from exc

    try:
        return ProductDefinition.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise DefinitionError(f"Invalid definition {path.name}: {exc}") from exc


class ProductDefinitionRepository:
    """In-memory set of product definitions keyed by id."""

    def __init__(self, definitions: Optional[List[ProductDefinition]] = None):
        self._definitions: Dict[str, ProductDefinition] = {}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: ProductDefinition) -> None:
        if definition.id in self._definitions:
            raise DefinitionError(f"Duplicate product definition id: {definition.id}")
        self._definitions[definition.id] = definition

    def get_definitions(self) -> List[ProductDefinition]:
        return list(self._definitions.values())

    def get_product_definition(self, definition_id: str) -> ProductDefinition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            raise ValidationError(f"Invalid report id provided: {definition_id}")
        return definition

    def get_single_report_product_definition(
        self, definition_id: str, report_id: str
    ) -> SingleReportProductDefinition:
        return self.get_product_definition(definition_id).single_report(report_id)


class FileProductDefinitionRepository(ProductDefinitionRepository):
    """Loads every definition document found in a directory, once."""

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = directory
        self._lock = threading.Lock()
        self._loaded = False

    def _ensure_loaded(self) -> None:
        with self._lock:
            if self._loaded:
                return
            if not self.directory.is_dir():
                logger.warning(
                    "Definitions directory %s does not exist", self.directory
                )
            else:
                for path in sorted(self.directory.iterdir()):
                    if path.suffix.lower() not in DEFINITION_SUFFIXES:
                        continue
                    self.add(load_definition_file(path))
                    logger.debug("Loaded product definition from %s", path.name)
            logger.info(
                "Loaded %d product definitions from %s",
                len(self._definitions),
                self.directory,
            )
            self._loaded = True

    def get_definitions(self) -> List[ProductDefinition]:
        self._ensure_loaded()
        return super().get_definitions()

    def get_product_definition(self, definition_id: str) -> ProductDefinition:
        self._ensure_loaded()
        return super().get_product_definition(definition_id)


_repository: Optional[ProductDefinitionRepository] = None


def get_definition_repository() -> ProductDefinitionRepository:
    """FastAPI dependency returning the process-wide definition repository."""
    global _repository
    if _repository is None:
        _repository = FileProductDefinitionRepository(settings.definitions_dir)
    return _repository
