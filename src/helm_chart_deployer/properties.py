"""Property resolution for ${...} placeholders."""
from __future__ import annotations

import logging
import os
from typing import List, Mapping, Optional, Sequence

from .config import ProjectConfig
from .constants import ARTIFACT_ID_PROPERTIES, PROJECT_VERSION_PROPERTY
from .types import PropertySource


class MappingPropertySource:
    """Property source backed by a plain mapping."""

    def __init__(self, name: str, values: Mapping[str, str]):
        self.name = name
        self._values = values

    def lookup(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        return None if value is None else str(value)

    def __repr__(self) -> str:
        return f"MappingPropertySource({self.name!r})"


class ProjectMetadataSource:
    """Synthetic properties derived from the project metadata."""

    name = "project"

    def __init__(self, project: ProjectConfig):
        self.project = project

    def lookup(self, key: str) -> Optional[str]:
        if key == PROJECT_VERSION_PROPERTY:
            return self.project.version
        if key in ARTIFACT_ID_PROPERTIES:
            return self.project.artifact_id
        return None


class PropertyResolver:
    """
    Ordered chain of property sources.

    Sources are consulted in order and the first one that knows a key wins.
    A key no source knows resolves to None.
    """

    def __init__(self, sources: Sequence[PropertySource]):
        self.sources: List[PropertySource] = list(sources)
        self.logger = logging.getLogger(__name__)

    def resolve(self, key: str) -> Optional[str]:
        for source in self.sources:
            value = source.lookup(key)
            if value is not None:
                self.logger.debug("Resolved property '%s' from %s", key, source.name)
                return value
        return None

    @classmethod
    def for_project(
        cls,
        project: ProjectConfig,
        system_properties: Optional[Mapping[str, str]] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> "PropertyResolver":
        """
        Build the standard chain: project metadata, system properties,
        environment, then the project property bag.
        """
        return cls([
            ProjectMetadataSource(project),
            MappingPropertySource("system properties", system_properties or {}),
            MappingPropertySource("environment", os.environ if environment is None else environment),
            MappingPropertySource("project properties", project.properties),
        ])
