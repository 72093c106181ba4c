"""Copy chart sources while substituting ${...} placeholders."""
from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path, PurePath
from typing import Callable, List, Optional, Pattern, Sequence, Union

from wcmatch import glob

from .constants import GLOB_SCHEME, REGEX_SCHEME, SUBSTITUTED_EXTENSIONS
from .properties import PropertyResolver
from .types import SubstitutionError, SubstitutionResult, UnresolvedPlaceholder

# A backslash escapes the token only when it is not itself escaped
PLACEHOLDER_PATTERN: Pattern[str] = re.compile(r"(?:(?<!\\)(\\))?\$\{(.*?)\}")

_SCHEME_PATTERN = re.compile(rf"^({GLOB_SCHEME}|{REGEX_SCHEME}):(.*)$", re.DOTALL)

# `*` stays within one folder, `**` crosses folders, `{a,b}` alternates
GLOB_FLAGS = glob.GLOBSTAR | glob.BRACE | glob.DOTGLOB


class ExclusionRule:
    """A glob or regex pattern matched against chart-relative paths."""

    def __init__(self, pattern: str):
        match = _SCHEME_PATTERN.match(pattern)
        if match:
            self.scheme, self.pattern = match.group(1), match.group(2)
        else:
            self.scheme, self.pattern = GLOB_SCHEME, pattern

        self._regex: Optional[Pattern[str]] = None
        if self.scheme == REGEX_SCHEME:
            try:
                self._regex = re.compile(self.pattern)
            except re.error as e:
                raise SubstitutionError(f"Invalid exclusion pattern '{pattern}': {e}") from e

    def matches(self, relative_path: Union[str, PurePath]) -> bool:
        path = PurePath(relative_path).as_posix()
        if self._regex is not None:
            return self._regex.fullmatch(path) is not None
        return glob.globmatch(path, self.pattern, flags=GLOB_FLAGS)

    def __repr__(self) -> str:
        return f"ExclusionRule('{self.scheme}:{self.pattern}')"


class PropertyReplacement:
    """Decides which chart files take part in placeholder substitution."""

    def __init__(self, exclusions: Optional[Sequence[str]] = None):
        self.exclusions = [ExclusionRule(pattern) for pattern in exclusions or []]

    def is_candidate(self, relative_path: Union[str, PurePath]) -> bool:
        """True if the extension qualifies and no exclusion rule matches."""
        path = PurePath(relative_path)
        extension = path.suffix[1:].lower()
        return extension in SUBSTITUTED_EXTENSIONS and not any(
            rule.matches(path) for rule in self.exclusions
        )


class PlaceholderSubstitutor:
    """Mirrors a chart source tree into a target directory, resolving placeholders."""

    def __init__(self, resolver: PropertyResolver, exclusions: Optional[Sequence[str]] = None):
        self.resolver = resolver
        self.replacement = PropertyReplacement(exclusions)
        self.logger = logging.getLogger(__name__)

    def substitute(self, source_dir: Union[str, Path], target_dir: Union[str, Path]) -> SubstitutionResult:
        """
        Copy every file below source_dir to target_dir.

        Files with a substitutable extension have their placeholders replaced,
        everything else is copied byte for byte.

        Args:
            source_dir: Chart source folder
            target_dir: Destination folder, created as needed

        Returns:
            Counts of processed files and the placeholders left unresolved

        Raises:
            SubstitutionError: If the source folder holds no files or I/O fails
        """
        source = Path(source_dir)
        target = Path(target_dir)
        self.logger.debug("Processing helm files in directory %s", source.resolve())

        files = sorted(path for path in source.rglob("*") if path.is_file()) if source.is_dir() else []
        if not files:
            raise SubstitutionError(f"No helm files found in {source.resolve()}")

        unresolved: List[UnresolvedPlaceholder] = []
        substituted = 0

        for file in files:
            relative = file.relative_to(source)
            target_file = target / relative
            self.logger.debug("Processing helm file %s -> %s", file, target_file)

            try:
                target_file.parent.mkdir(parents=True, exist_ok=True)
                if self.replacement.is_candidate(relative):
                    unresolved.extend(self._substitute_file(file, target_file, relative.as_posix()))
                    substituted += 1
                else:
                    shutil.copyfile(file, target_file)
            except (OSError, UnicodeDecodeError) as e:
                raise SubstitutionError(f"Failed to process {file}: {e}") from e

        result = SubstitutionResult(
            processed_count=len(files),
            substituted_count=substituted,
            copied_count=len(files) - substituted,
            unresolved=unresolved,
            target_dir=str(target),
        )

        self.logger.info(
            "Processed %d helm files (%d substituted, %d copied) into %s",
            result["processed_count"],
            result["substituted_count"],
            result["copied_count"],
            target,
        )
        return result

    def substitute_line(
        self,
        line: str,
        on_unresolved: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Replace the placeholders of a single line, left to right."""

        def replace(match: "re.Match[str]") -> str:
            escaped, name = match.group(1), match.group(2)
            token = "${" + name + "}"
            if escaped:
                return token

            value = self.resolver.resolve(name)
            if value is None:
                if on_unresolved is not None:
                    on_unresolved(name)
                return token
            return value

        return PLACEHOLDER_PATTERN.sub(replace, line)

    def _substitute_file(self, source: Path, target: Path, display_path: str) -> List[UnresolvedPlaceholder]:
        unresolved: List[UnresolvedPlaceholder] = []

        def record(name: str) -> None:
            self.logger.warning("Could not resolve property '%s' in %s", name, display_path)
            unresolved.append(UnresolvedPlaceholder(property=name, file=display_path))

        # newline="" keeps every line's own terminator intact
        with source.open("r", encoding="utf-8", newline="") as reader, \
                target.open("w", encoding="utf-8", newline="") as writer:
            for line in reader:
                body = line.rstrip("\r\n")
                writer.write(self.substitute_line(body, record) + line[len(body):])

        return unresolved
