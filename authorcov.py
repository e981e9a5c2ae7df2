#!/usr/bin/env python3
"""
Date/Author Coverage Grouper (v1.0.0)

Correlates compiled class files with the @date and @author Javadoc tags of the
Java sources they were compiled from, then groups the class files by creation
month and author so a coverage report can be produced for every group.

Pipeline (per project):
- Source discovery (Ant-style include/exclude globs)
- Javadoc block tag extraction
- Date normalization (ordered patterns, canonical yyyyMMdd) and author truncation
- Source path -> class path mapping
- Directory-batched class file resolution (primary + nested/anonymous classes)
- Two-level grouping: period -> author -> class files

Multi-module builds: a pom-packaged project (or --aggregate-projects) acts as an
aggregation root and gets one report group per reactor dependency.

Version: 1.0.0
"""

import json
import logging
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from xml.etree.ElementTree import Element

import click
import pandas as pd
import regex as re
import yaml
from colorama import Fore, Style, init as colorama_init
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET
from tqdm import tqdm


# Version information
VERSION = "1.0.0"
REPORT_SCHEMA_VERSION = "1.0.0"

JAVA_FILE_SUFFIX = ".java"
CLASS_FILE_SUFFIX = ".class"
NESTED_CLASS_SEPARATOR = "$"

DEFAULT_DATE_TAG = "date"
DEFAULT_AUTHOR_TAG = "author"
DEFAULT_DATE_PATTERNS = ("yyyy/M/d", "yyyy-M-d", "yyyy年M月d日")
DEFAULT_AUTHOR_DELIMITERS = ("/",)
DEFAULT_PERIOD_FORMAT = "{year}年{month}月"
DEFAULT_OUTPUT_DIR = "authorcov-report"

# Dependency scopes whose reactor projects are reported by an aggregation root
REPORT_DEPENDENCY_SCOPES = ("compile", "runtime", "provided")

CONFIG_FILE_NAMES = (".authorcov.yaml", ".authorcov.yml", ".authorcov.json")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================


class AuthorcovError(Exception):
    """Base class for all errors raised by the grouper"""


class ProjectModelError(AuthorcovError):
    """The build project model (pom.xml) could not be loaded. Fatal."""


class SourceTreeError(AuthorcovError):
    """The source tree of a project could not be enumerated. Fatal."""


class ConfigurationError(AuthorcovError, ValueError):
    """An option value cannot be used. Fatal."""


class MissingSourceFileError(AuthorcovError):
    """A discovered source file could not be read. Recorded, never fatal."""

    def __init__(self, path: Path, reason: str = "not found"):
        self.path = path
        super().__init__(f"Java source file {reason}: {path}")


# ============================================================================
# DATA MODEL
# ============================================================================


@dataclass(frozen=True)
class CommentTags:
    """Raw tag values found in the doc comments of one source file"""

    date: Optional[str] = None
    author: Optional[str] = None

    def missing(self, date_tag: str, author_tag: str) -> List[str]:
        """Return the names of the tags that were not found (or are blank)."""
        names = []
        if not self.date or not self.date.strip():
            names.append(date_tag)
        if not self.author or not self.author.strip():
            names.append(author_tag)
        return names


@dataclass(frozen=True)
class RawArtifactFile:
    """
    Expected class file location of one tagged source file.

    ``base_path`` is the class path without its suffix; it has not been checked
    against the file system yet.
    """

    period: str
    author: str
    directory: Path
    base_path: Path

    @property
    def base_name(self) -> str:
        return self.base_path.name


@dataclass(frozen=True)
class ArtifactFile:
    """A class file that exists on disk, attributed to a period and an author"""

    period: str
    author: str
    file: Path

    def is_nested(self, separator: str = NESTED_CLASS_SEPARATOR) -> bool:
        return separator in self.file.name


# ============================================================================
# JAVADOC TAG EXTRACTION
# ============================================================================

# Lexical elements that can hide or contain comment delimiters. Matching them
# leftmost keeps "/**" inside string literals out of the comment scan.
_JAVA_SOURCE_TOKEN = re.compile(
    r'(?P<text_block>"""(?:\\.|[^\\])*?""")'
    r'|(?P<string>"(?:\\.|[^"\\\n])*")'
    r"|(?P<char>'(?:\\.|[^'\\\n])*')"
    r"|(?P<line_comment>//[^\n]*)"
    r"|(?P<doc_comment>/\*\*(?!/)(?P<doc_body>.*?)\*/)"
    r"|(?P<block_comment>/\*.*?\*/)",
    re.DOTALL,
)

_BLOCK_TAG = re.compile(r"^@(?P<name>[^\s{}]+)(?:\s+(?P<content>.*))?$")


def iter_doc_comments(source: str) -> Iterator[str]:
    """Yield the body of every /** ... */ comment in source order."""
    for match in _JAVA_SOURCE_TOKEN.finditer(source):
        if match.group("doc_comment") is not None:
            yield match.group("doc_body")


def _comment_lines(body: str) -> Iterator[str]:
    for line in body.splitlines():
        yield line.strip().lstrip("*").strip()


def parse_block_tags(body: str) -> List[Tuple[str, str]]:
    """
    Split a doc comment body into its block tags.

    A block tag starts with ``@name`` at the beginning of a comment line; its
    content runs until the next block tag or the end of the comment. The
    description preceding the first block tag is ignored.

    Args:
        body: Comment text between ``/**`` and ``*/``

    Returns:
        List of (tag name, trimmed content) in declaration order
    """
    tags: List[Tuple[str, List[str]]] = []
    for line in _comment_lines(body):
        match = _BLOCK_TAG.match(line)
        if match:
            tags.append((match.group("name"), [match.group("content") or ""]))
        elif tags:
            tags[-1][1].append(line)
    return [(name, "\n".join(parts).strip()) for name, parts in tags]


class TagExtractor:
    """
    Pull the date and author tag values out of a Java source file.

    The first occurrence of each tag wins; later comments are only consulted
    while one of the two is still missing.
    """

    def __init__(
        self,
        date_tag: str = DEFAULT_DATE_TAG,
        author_tag: str = DEFAULT_AUTHOR_TAG,
        encoding: str = "UTF-8",
    ):
        self.date_tag = date_tag
        self.author_tag = author_tag
        self.encoding = encoding
        self.errors: List[str] = []

    def read_tags(self, source_file: Path) -> CommentTags:
        """Like extract() but raises MissingSourceFileError instead of recording it."""
        try:
            with open(source_file, "r", encoding=self.encoding, errors="replace") as f:
                source = f.read()
        except FileNotFoundError:
            raise MissingSourceFileError(source_file) from None
        except OSError as e:
            raise MissingSourceFileError(source_file, f"unreadable ({e.strerror})") from e

        date_text = None
        author_text = None
        for body in iter_doc_comments(source):
            for name, content in parse_block_tags(body):
                if date_text is None and name == self.date_tag:
                    date_text = content
                if author_text is None and name == self.author_tag:
                    author_text = content
            if date_text is not None and author_text is not None:
                break
        return CommentTags(date_text, author_text)

    def extract(self, source_file: Path) -> CommentTags:
        try:
            tags = self.read_tags(source_file)
        except MissingSourceFileError as e:
            logger.error(str(e))
            self.errors.append(str(e))
            return CommentTags()

        missing = tags.missing(self.date_tag, self.author_tag)
        if missing:
            logger.warning(
                "Java source file missing %s tags: %s",
                " or ".join(f"@{name}" for name in missing),
                source_file,
            )
        return tags


# ============================================================================
# DATE & AUTHOR NORMALIZATION
# ============================================================================

_PATTERN_TOKEN = re.compile(r"'(?:[^']|'')+'|''|y+|M+|d+|H+|m+|s+|.", re.DOTALL)

_NUMERIC_DIRECTIVES = {"d": "%d", "H": "%H", "m": "%M", "s": "%S"}


@dataclass(frozen=True)
class DatePattern:
    """
    One accepted date pattern, compiled once to a strptime format.

    Instances are immutable and can be shared by any number of workers.
    """

    pattern: str
    strptime_format: str

    @classmethod
    def compile(cls, pattern: str) -> "DatePattern":
        parts = []
        for token in _PATTERN_TOKEN.findall(pattern):
            letter = token[0]
            if token == "''":
                parts.append("'")
            elif letter == "'" and len(token) > 1:
                parts.append(token[1:-1].replace("''", "'").replace("%", "%%"))
            elif letter == "y":
                parts.append("%y" if len(token) == 2 else "%Y")
            elif letter == "M":
                if len(token) <= 2:
                    parts.append("%m")
                else:
                    parts.append("%b" if len(token) == 3 else "%B")
            elif letter in _NUMERIC_DIRECTIVES:
                parts.append(_NUMERIC_DIRECTIVES[letter])
            else:
                parts.append(token.replace("%", "%%"))
        return cls(pattern, "".join(parts))

    def parse(self, text: str) -> Optional[datetime]:
        try:
            return datetime.strptime(text, self.strptime_format)
        except ValueError:
            return None


class DateNormalizer:
    """Parse free-form tag dates into the canonical ``yyyyMMdd`` form"""

    def __init__(self, patterns: Sequence[str] = DEFAULT_DATE_PATTERNS):
        self.patterns = tuple(DatePattern.compile(p) for p in patterns if p)

    def parse(self, raw: Optional[str]) -> Optional[datetime]:
        if not raw or not raw.strip():
            return None
        text = raw.strip()
        for pattern in self.patterns:
            parsed = pattern.parse(text)
            if parsed is not None:
                return parsed
        return None

    def normalize(self, raw: Optional[str]) -> Optional[str]:
        """
        Reformat a raw date to a fixed-width numeric string.

        Fixed width means lexicographic order equals chronological order, so
        normalized dates can be compared as plain strings.

        Args:
            raw: Tag content such as '2024/3/15'

        Returns:
            '20240315', or None when the input is empty or matches no pattern
        """
        parsed = self.parse(raw)
        if parsed is None:
            return None
        return f"{parsed.year:04d}{parsed.month:02d}{parsed.day:02d}"

    @staticmethod
    def period_key(normalized: str, period_format: str = DEFAULT_PERIOD_FORMAT) -> str:
        """'20240315' -> '2024年03月' (first-level grouping key)"""
        return period_format.format(year=normalized[:4], month=normalized[4:6])


class AuthorNormalizer:
    """Truncate raw author tag values at the earliest configured delimiter"""

    def __init__(self, delimiters: Sequence[str] = DEFAULT_AUTHOR_DELIMITERS):
        self.delimiters = tuple(d for d in delimiters if d)

    def normalize(self, raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        author = raw.strip()
        # Ties on position go to the delimiter configured first
        positions = [author.find(d) for d in self.delimiters]
        cut = min((p for p in positions if p >= 0), default=-1)
        if cut >= 0:
            author = author[:cut].strip()
        return author or None


# ============================================================================
# PATH MAPPING & CLASS FILE RESOLUTION
# ============================================================================


class PathMapper:
    """
    Map a source file to its suffix-free class file path.

    The output tree must mirror the source tree layout; this is guaranteed by
    the build and not checked here.
    """

    def __init__(
        self,
        source_root: Path,
        output_root: Path,
        source_suffix: str = JAVA_FILE_SUFFIX,
    ):
        self.source_root = Path(source_root)
        self.output_root = Path(output_root)
        self.source_suffix = source_suffix

    def map(self, source_file: Path) -> Path:
        mapped = self.output_root / Path(source_file).relative_to(self.source_root)
        if self.source_suffix and mapped.name.endswith(self.source_suffix):
            mapped = mapped.with_name(mapped.name[: -len(self.source_suffix)])
        return mapped


class SiblingArtifactResolver:
    """
    Find the class files generated from each source file.

    A source ``Foo`` owns ``Foo.class`` plus every ``Foo$*`` file (nested and
    anonymous classes) in the same directory. Each directory is listed once,
    however many sources map into it.
    """

    def __init__(
        self,
        artifact_suffix: str = CLASS_FILE_SUFFIX,
        separator: str = NESTED_CLASS_SEPARATOR,
    ):
        self.artifact_suffix = artifact_suffix
        self.separator = separator
        self.listing_count = 0
        self._lock = threading.Lock()

    @staticmethod
    def group_by_directory(
        raw_files: Iterable[RawArtifactFile],
    ) -> Dict[Path, List[RawArtifactFile]]:
        grouped: Dict[Path, List[RawArtifactFile]] = {}
        for raw in raw_files:
            grouped.setdefault(raw.directory, []).append(raw)
        return grouped

    def list_directory(self, directory: Path) -> List[Path]:
        """Regular files in directory, sorted; [] when it cannot be listed."""
        with self._lock:
            self.listing_count += 1
        try:
            with os.scandir(directory) as entries:
                return sorted(Path(e.path) for e in entries if e.is_file())
        except OSError as e:
            logger.debug("Cannot list class directory %s: %s", directory, e)
            return []

    def _owns(self, raw: RawArtifactFile, name: str) -> bool:
        return name == raw.base_name + self.artifact_suffix or name.startswith(
            raw.base_name + self.separator
        )

    def resolve_directory(
        self, directory: Path, raw_files: Sequence[RawArtifactFile]
    ) -> List[ArtifactFile]:
        entries = self.list_directory(directory)
        if not entries:
            return []

        # A file claimed by several sources ("Foo$Bar.java" next to "Foo.java")
        # goes to the most specific one.
        owners: Dict[Path, RawArtifactFile] = {}
        for raw in sorted(raw_files, key=lambda r: len(r.base_name)):
            for entry in entries:
                if self._owns(raw, entry.name):
                    owners[entry] = raw

        artifacts = []
        for entry in entries:
            raw = owners.get(entry)
            if raw is not None:
                logger.debug("Found class file: %s", entry)
                artifacts.append(ArtifactFile(raw.period, raw.author, entry))
        return artifacts

    def resolve(
        self,
        raw_files: Iterable[RawArtifactFile],
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> List[ArtifactFile]:
        """Resolve all raw files, listing distinct directories in parallel."""
        grouped = self.group_by_directory(raw_files)
        if executor is None:
            return [
                artifact
                for directory, raws in grouped.items()
                for artifact in self.resolve_directory(directory, raws)
            ]
        futures = [
            executor.submit(self.resolve_directory, directory, raws)
            for directory, raws in grouped.items()
        ]
        artifacts = []
        for future in as_completed(futures):
            artifacts.extend(future.result())
        return artifacts


# ============================================================================
# GROUPING
# ============================================================================


class ArtifactGrouping:
    """
    Thread-safe period -> author -> [class file] mapping.

    Producers call add() from any worker thread; to_dict() returns a sorted
    snapshot so reports are identical whatever the parallelism degree.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._groups: Dict[str, Dict[str, List[Path]]] = {}

    def add(self, artifact: ArtifactFile):
        with self._lock:
            authors = self._groups.setdefault(artifact.period, {})
            authors.setdefault(artifact.author, []).append(artifact.file)

    def add_all(self, artifacts: Iterable[ArtifactFile]):
        for artifact in artifacts:
            self.add(artifact)

    def authors(self) -> Set[str]:
        with self._lock:
            return {author for files in self._groups.values() for author in files}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(f) for files in self._groups.values() for f in files.values())

    def to_dict(self) -> Dict[str, Dict[str, List[Path]]]:
        with self._lock:
            return {
                period: {
                    author: sorted(self._groups[period][author])
                    for author in sorted(self._groups[period])
                }
                for period in sorted(self._groups)
            }


# ============================================================================
# PROJECT MODEL
# ============================================================================

POM_FILE = "pom.xml"


@dataclass(frozen=True)
class Dependency:
    group_id: str
    artifact_id: str
    scope: str = "compile"


@dataclass
class Project:
    """
    Build project handle: directories, packaging and declared dependencies.

    Source and output directories default to the Maven layout below basedir.
    """

    artifact_id: str
    basedir: Path
    group_id: str = ""
    name: Optional[str] = None
    packaging: str = "jar"
    source_directory: Optional[Path] = None
    output_directory: Optional[Path] = None
    dependencies: List[Dependency] = field(default_factory=list)
    modules: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.basedir = Path(self.basedir)
        if self.source_directory is None:
            self.source_directory = self.basedir / "src" / "main" / "java"
        if self.output_directory is None:
            self.output_directory = self.basedir / "target" / "classes"
        self.source_directory = Path(self.source_directory)
        self.output_directory = Path(self.output_directory)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.group_id, self.artifact_id)

    @property
    def display_name(self) -> str:
        return self.name or self.artifact_id


class _PomReader:
    """Namespace-aware accessors over a parsed pom.xml"""

    def __init__(self, root: Element):
        self.root = root
        self.ns = root.tag[1 : root.tag.index("}")] if root.tag.startswith("{") else ""

    def _path(self, path: str) -> str:
        if not self.ns:
            return path
        return "/".join(f"{{{self.ns}}}{part}" for part in path.split("/"))

    def text(self, path: str, element: Optional[Element] = None) -> Optional[str]:
        found = (self.root if element is None else element).find(self._path(path))
        if found is None or found.text is None:
            return None
        return found.text.strip() or None

    def all(self, path: str) -> List[Element]:
        return self.root.findall(self._path(path))


def _interpolate(value: str, basedir: Path, group_id: str) -> str:
    return (
        value.replace("${project.basedir}", str(basedir))
        .replace("${basedir}", str(basedir))
        .replace("${project.groupId}", group_id)
    )


def load_maven_project(basedir: Path) -> Project:
    """
    Read basedir/pom.xml into a Project.

    Raises:
        ProjectModelError: pom.xml is missing, malformed, declares entities
            or has no artifactId
    """
    basedir = Path(basedir)
    pom_path = basedir / POM_FILE
    try:
        root = ET.parse(pom_path).getroot()
    except FileNotFoundError:
        raise ProjectModelError(f"No {POM_FILE} found in {basedir}") from None
    except ET.ParseError as e:
        raise ProjectModelError(f"Malformed {pom_path}: {e}") from e
    except DefusedXmlException as e:
        raise ProjectModelError(f"Rejected {pom_path}: {e}") from e

    pom = _PomReader(root)
    artifact_id = pom.text("artifactId")
    if not artifact_id:
        raise ProjectModelError(f"{pom_path} does not declare an artifactId")
    group_id = pom.text("groupId") or pom.text("parent/groupId") or ""

    def directory(path: str) -> Optional[Path]:
        value = pom.text(path)
        if value is None:
            return None
        resolved = Path(_interpolate(value, basedir, group_id))
        return resolved if resolved.is_absolute() else basedir / resolved

    dependencies = []
    for element in pom.all("dependencies/dependency"):
        dep_artifact = pom.text("artifactId", element)
        if not dep_artifact:
            continue
        dep_group = _interpolate(pom.text("groupId", element) or group_id, basedir, group_id)
        dependencies.append(
            Dependency(dep_group, dep_artifact, pom.text("scope", element) or "compile")
        )

    return Project(
        artifact_id=artifact_id,
        basedir=basedir,
        group_id=group_id,
        name=pom.text("name"),
        packaging=pom.text("packaging") or "jar",
        source_directory=directory("build/sourceDirectory"),
        output_directory=directory("build/outputDirectory"),
        dependencies=dependencies,
        modules=[e.text.strip() for e in pom.all("modules/module") if e.text and e.text.strip()],
    )


class Reactor:
    """All projects of one multi-module build, looked up by coordinates"""

    def __init__(self, projects: Iterable[Project]):
        self.projects = list(projects)
        self._by_key = {p.key: p for p in self.projects}

    @classmethod
    def load(cls, basedir: Path) -> Tuple[Project, "Reactor"]:
        """Load the root project and every module reachable from it."""
        root = load_maven_project(basedir)
        projects = [root]
        seen = {root.basedir.resolve()}
        pending = [root]
        while pending:
            parent = pending.pop(0)
            for module in parent.modules:
                module_dir = (parent.basedir / module).resolve()
                if module_dir in seen:
                    continue
                seen.add(module_dir)
                project = load_maven_project(module_dir)
                projects.append(project)
                pending.append(project)
        return root, cls(projects)

    def find_project(self, dependency: Dependency) -> Optional[Project]:
        return self._by_key.get((dependency.group_id, dependency.artifact_id))

    def find_dependencies(self, project: Project, scopes: Sequence[str]) -> List[Project]:
        """Direct dependencies of project built in this reactor, limited to scopes."""
        result = []
        for dependency in project.dependencies:
            if dependency.scope not in scopes:
                continue
            found = self.find_project(dependency)
            if found is not None:
                result.append(found)
        return result


# ============================================================================
# FILE FILTER
# ============================================================================

_ANT_TOKEN = re.compile(r"(\*\*/|/\*\*$|\*\*|\*|\?)")


def ant_pattern_to_regex(pattern: str) -> "re.Pattern":
    """
    Compile an Ant-style glob.

    ``**`` spans directories, ``*`` stays within one path segment and ``?``
    matches a single character. A trailing ``/`` means ``/**``.
    """
    pattern = pattern.strip().replace("\\", "/").lstrip("/")
    if pattern.endswith("/"):
        pattern += "**"
    parts = []
    for token in _ANT_TOKEN.split(pattern):
        if token == "**/":
            parts.append("(?:.*/)?")
        elif token == "/**":
            parts.append("(?:/.*)?")
        elif token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        elif token == "?":
            parts.append("[^/]")
        elif token:
            parts.append(re.escape(token))
    return re.compile("".join(parts), re.DOTALL)


class FileFilter:
    """Select source files below a root with include/exclude globs"""

    def __init__(self, includes: Sequence[str] = ("**",), excludes: Sequence[str] = ()):
        self.includes = [ant_pattern_to_regex(p) for p in (includes or ("**",)) if p.strip()]
        self.excludes = [ant_pattern_to_regex(p) for p in excludes if p.strip()]

    def matches(self, relative_path: str) -> bool:
        if not any(p.fullmatch(relative_path) for p in self.includes):
            return False
        return not any(p.fullmatch(relative_path) for p in self.excludes)

    def get_files(self, root: Path) -> List[Path]:
        """
        Return the matching regular files below root, sorted.

        A root that does not exist has no files. A root that exists but cannot
        be listed raises SourceTreeError.
        """
        root = Path(root)
        if not root.exists():
            logger.info("Source directory does not exist, nothing to scan: %s", root)
            return []
        if not root.is_dir():
            raise SourceTreeError(f"Source directory is not a directory: {root}")

        def on_error(error: OSError):
            if Path(error.filename) == root:
                raise SourceTreeError(f"Cannot list source directory {root}: {error}")
            logger.warning("Skipping unreadable directory %s: %s", error.filename, error)

        files = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            dirnames.sort()
            for name in filenames:
                path = Path(dirpath) / name
                if self.matches(path.relative_to(root).as_posix()):
                    files.append(path)
        return sorted(files)


# ============================================================================
# REPORT GROUPS & SINKS
# ============================================================================


class ReportGroup:
    """Hierarchical report group namer; children are created on first visit"""

    def __init__(self, name: Optional[str] = None, parent: Optional["ReportGroup"] = None):
        self.name = name
        self.parent = parent
        self.children: Dict[str, "ReportGroup"] = {}

    def visit_group(self, name: str) -> "ReportGroup":
        if name not in self.children:
            self.children[name] = ReportGroup(name, self)
        return self.children[name]

    @property
    def path(self) -> Tuple[str, ...]:
        if self.parent is None:
            return () if self.name is None else (self.name,)
        return self.parent.path + (self.name,)


class ReportSink(ABC):
    """Consumer of the grouped class files (coverage computation lives here)"""

    @abstractmethod
    def process_project(
        self,
        group: ReportGroup,
        author: str,
        project: Project,
        files: List[Path],
        encoding: str,
    ):
        """Handle the class files of one author below one report group"""


@dataclass
class GroupRecord:
    path: Tuple[str, ...]
    author: str
    project: str
    files: List[Path]
    encoding: str


class ManifestReportSink(ReportSink):
    """
    Default sink: records every group and writes a manifest of the grouping.

    Outputs report.json (full grouping), summary.csv (one row per group and
    author) and report.md. Class file contents are never read.
    """

    def __init__(self, output_dir: Path, title: Optional[str] = None,
                 separator: str = NESTED_CLASS_SEPARATOR):
        self.output_dir = Path(output_dir)
        self.title = title
        self.separator = separator
        self.records: List[GroupRecord] = []
        self.encoding: Optional[str] = None

    def process_project(self, group, author, project, files, encoding):
        self.encoding = encoding
        self.records.append(
            GroupRecord(group.path, author, project.artifact_id, list(files), encoding)
        )

    def _nested_count(self, files: Sequence[Path]) -> int:
        return sum(1 for f in files if self.separator in f.name)

    def to_dict(self) -> Dict[str, Any]:
        groups = []
        for record in self.records:
            nested = self._nested_count(record.files)
            groups.append(
                {
                    "path": list(record.path),
                    "author": record.author,
                    "project": record.project,
                    "artifact_count": len(record.files),
                    "primary_count": len(record.files) - nested,
                    "nested_count": nested,
                    "files": [str(f) for f in record.files],
                }
            )
        return {
            "generator_version": VERSION,
            "schema_version": REPORT_SCHEMA_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "title": self.title,
            "encoding": self.encoding,
            "groups": groups,
        }

    def summary_frame(self) -> pd.DataFrame:
        rows = []
        for record in self.records:
            nested = self._nested_count(record.files)
            rows.append(
                {
                    "group": "/".join(record.path[:-1]),
                    "project": record.project,
                    "period": record.path[-1] if record.path else "",
                    "author": record.author,
                    "artifacts": len(record.files),
                    "primary": len(record.files) - nested,
                    "nested": nested,
                }
            )
        columns = ["group", "project", "period", "author", "artifacts", "primary", "nested"]
        return pd.DataFrame(rows, columns=columns)

    def _markdown(self, frame: pd.DataFrame) -> str:
        lines = [
            f"# {self.title or 'Date/Author Coverage Groups'}",
            "",
            f"**Generated:** {datetime.now(timezone.utc).isoformat()}",
            f"**Generator Version:** {VERSION}",
            "",
            "## Overview",
            "",
            f"- **Groups:** {len(frame)}",
            f"- **Class files:** {int(frame['artifacts'].sum()) if not frame.empty else 0}",
            f"- **Authors:** {frame['author'].nunique() if not frame.empty else 0}",
            f"- **Periods:** {frame['period'].nunique() if not frame.empty else 0}",
            "",
        ]
        if not frame.empty:
            lines.extend(
                [
                    "## Groups",
                    "",
                    "| Project | Period | Author | Class files | Nested |",
                    "|---|---|---|---:|---:|",
                ]
            )
            for row in frame.itertuples(index=False):
                lines.append(
                    f"| {row.project} | {row.period} | {row.author} | {row.artifacts} | {row.nested} |"
                )
            lines.append("")
        return "\n".join(lines)

    def write(self) -> Dict[str, Path]:
        """Write all outputs and return their paths by kind."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        paths = {
            "json": self.output_dir / "report.json",
            "csv": self.output_dir / "summary.csv",
            "markdown": self.output_dir / "report.md",
        }
        with open(paths["json"], "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        frame = self.summary_frame()
        frame.to_csv(paths["csv"], index=False, encoding="utf-8")
        with open(paths["markdown"], "w", encoding="utf-8") as f:
            f.write(self._markdown(frame))
        return paths


# ============================================================================
# CONFIGURATION
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()
    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")
    return data or {}


def find_config_file(project_dir: str) -> Optional[str]:
    """Look for .authorcov.{yaml,yml,json} in the project, then the cwd."""
    for search_dir in (project_dir, os.getcwd()):
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """Resolve option values with precedence: CLI > config file > defaults"""

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        project_dir: str,
    ):
        # Unset click options arrive as None, unused repeatable ones as ()
        self.cli = {k: v for k, v in cli_args.items() if v is not None and v != ()}
        self.config_path = config_path or find_config_file(project_dir)
        self.config: Dict[str, Any] = {}
        if self.config_path:
            self.config = load_config_file(self.config_path)
            logger.info("Using configuration: %s", self.config_path)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default


# Options that config files may give as one comma-separated string
_COMMA_SEPARATED = {"date_patterns", "includes", "excludes"}


def _as_tuple(name: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        if name in _COMMA_SEPARATED:
            return tuple(v.strip() for v in value.split(",") if v.strip())
        return (value,)
    return tuple(str(v) for v in value)


_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0", ""}


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ConfigurationError(f"Option {name} expects true or false, got {value!r}")


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Option {name} expects an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Option {name} expects an integer, got {value!r}") from None
    if number < 1:
        raise ConfigurationError(f"Option {name} must be at least 1, got {number}")
    return number


@dataclass
class AuthorcovConfig:
    """Resolved run configuration"""

    date_tag_name: str = DEFAULT_DATE_TAG
    date_patterns: Tuple[str, ...] = DEFAULT_DATE_PATTERNS
    author_tag_name: str = DEFAULT_AUTHOR_TAG
    author_delimiters: Tuple[str, ...] = DEFAULT_AUTHOR_DELIMITERS
    baseline_date: Optional[str] = None
    aggregate_projects: bool = False
    includes: Tuple[str, ...] = ("**",)
    excludes: Tuple[str, ...] = ()
    title: Optional[str] = None
    source_encoding: str = "UTF-8"
    period_format: str = DEFAULT_PERIOD_FORMAT
    source_suffix: str = JAVA_FILE_SUFFIX
    artifact_suffix: str = CLASS_FILE_SUFFIX
    jobs: Optional[int] = None
    output: str = DEFAULT_OUTPUT_DIR

    def __post_init__(self):
        try:
            DateNormalizer.period_key("19700101", self.period_format)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid period format {self.period_format!r}: use {{year}} and {{month}} ({e!r})"
            ) from None

    @property
    def worker_count(self) -> int:
        return max(1, self.jobs or os.cpu_count() or 1)

    @classmethod
    def from_resolver(cls, resolver: ConfigResolver) -> "AuthorcovConfig":
        tuple_fields = {"date_patterns", "author_delimiters", "includes", "excludes"}
        values: Dict[str, Any] = {}
        for f in fields(cls):
            value = resolver.get(f.name)
            if value is None:
                continue
            # YAML loads unquoted 2024-04-01 as a date
            if isinstance(value, date):
                value = value.isoformat()
            if f.name in tuple_fields:
                value = _as_tuple(f.name, value)
            elif f.name == "aggregate_projects":
                value = _as_bool(f.name, value)
            elif f.name == "jobs":
                value = _as_int(f.name, value)
            values[f.name] = value
        return cls(**values)


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console stage/progress output for the CLI.

    Colors come from colorama and progress bars from tqdm; both are turned off
    in quiet mode, except for errors, which always reach stderr. Diagnostics
    go through logging instead.
    """

    RULE_WIDTH = 72

    def __init__(self, quiet: bool = False, verbose: bool = False, use_colors: bool = True):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times: Dict[str, float] = {}

    def _emit(self, text: str, color: str = "", stream=None, force: bool = False):
        if self.quiet and not force:
            return
        if color and self.use_colors:
            text = f"{color}{text}{Style.RESET_ALL}"
        print(text, file=stream or sys.stdout)

    def _banner(self, title: str, color: str, detail: str = ""):
        rule = "=" * self.RULE_WIDTH
        self._emit("")
        self._emit(rule, Fore.CYAN)
        self._emit(title, color + Style.BRIGHT)
        if detail:
            self._emit(f"   {detail}")
        self._emit(rule, Fore.CYAN)

    def _emit_stats(self, stats: Dict[str, Any]):
        for key, value in stats.items():
            self._emit(f"   {key}: {value}")

    def stage_start(self, stage_name: str, message: str = ""):
        self.stage_times[stage_name] = time.time()
        self._banner(f"> {stage_name}", Fore.BLUE, message)

    def stage_complete(self, stage_name: str, stats: Optional[Dict[str, Any]] = None) -> float:
        """Print the stage duration (and stats when verbose); return seconds."""
        elapsed = time.time() - self.stage_times.pop(stage_name, time.time())
        self._emit(f"{stage_name} done in {elapsed:.3f}s", Fore.GREEN + Style.BRIGHT)
        if stats and self.verbose:
            self._emit_stats(stats)
        return elapsed

    def create_progress_bar(self, total: int, desc: str, unit: str = " files") -> Optional[tqdm]:
        """tqdm bar over total items; None when quiet or there is nothing to count."""
        if self.quiet or total == 0:
            return None
        return tqdm(total=total, desc=desc, unit=unit, leave=False)

    def info(self, message: str):
        self._emit(message)

    def warning(self, message: str):
        self._emit(f"WARNING: {message}", Fore.YELLOW)

    def error(self, message: str):
        self._emit(f"ERROR: {message}", Fore.RED + Style.BRIGHT, stream=sys.stderr, force=True)

    def success(self, message: str):
        self._emit(message, Fore.GREEN)

    def summary(self, stats: Dict[str, Any]):
        self._banner("Summary", Fore.MAGENTA)
        self._emit_stats(stats)
        self._emit(f"   Elapsed: {time.time() - self.start_time:.2f}s", Fore.YELLOW)


# ============================================================================
# AGGREGATION
# ============================================================================


@dataclass
class AggregationStats:
    sources_scanned: int = 0
    sources_grouped: int = 0
    directories_listed: int = 0
    artifacts_found: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ProjectAggregator:
    """
    Scan one project's sources and group its class files by period and author.

    Tag extraction through path mapping runs on a thread pool, one task per
    source file. The resulting raw files are grouped by directory, and each
    distinct directory is then listed once on the same pool; matches are added
    to a shared ArtifactGrouping.
    """

    def __init__(self, config: AuthorcovConfig, reporter: Optional[ProgressReporter] = None):
        self.config = config
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.file_filter = FileFilter(config.includes, config.excludes)
        self.tag_extractor = TagExtractor(
            config.date_tag_name, config.author_tag_name, config.source_encoding
        )
        self.date_normalizer = DateNormalizer(config.date_patterns)
        self.author_normalizer = AuthorNormalizer(config.author_delimiters)
        self.resolver = SiblingArtifactResolver(config.artifact_suffix)
        self.stats = AggregationStats()
        self.errors: List[str] = self.tag_extractor.errors

        self.baseline = self.date_normalizer.normalize(config.baseline_date)
        if config.baseline_date and self.baseline is None:
            logger.warning(
                "Baseline date %r matches none of the date patterns; baseline filter disabled",
                config.baseline_date,
            )

    def source_files(self, project: Project) -> List[Path]:
        return [
            f
            for f in self.file_filter.get_files(project.source_directory)
            if f.name.endswith(self.config.source_suffix)
        ]

    def to_raw_artifact(self, source_file: Path, mapper: PathMapper) -> Optional[RawArtifactFile]:
        """Run tag -> normalize -> map for one source; None when it is excluded."""
        tags = self.tag_extractor.extract(source_file)
        created = self.date_normalizer.normalize(tags.date)
        if tags.date and tags.date.strip() and created is None:
            logger.warning(
                "Java source file @%s value %r matches no date pattern: %s",
                self.config.date_tag_name, tags.date, source_file,
            )
        author = self.author_normalizer.normalize(tags.author)
        if tags.author and tags.author.strip() and author is None:
            logger.warning(
                "Java source file has an empty @%s name: %s",
                self.config.author_tag_name, source_file,
            )
        if created is None or author is None:
            return None
        if self.baseline and created < self.baseline:
            return None

        base_path = mapper.map(source_file)
        period = DateNormalizer.period_key(created, self.config.period_format)
        return RawArtifactFile(period, author, base_path.parent, base_path)

    def collect_raw_artifacts(
        self, project: Project, executor: ThreadPoolExecutor
    ) -> Dict[Path, List[RawArtifactFile]]:
        sources = self.source_files(project)
        self.stats.sources_scanned = len(sources)
        mapper = PathMapper(
            project.source_directory, project.output_directory, self.config.source_suffix
        )

        raw_files = []
        progress_bar = self.reporter.create_progress_bar(
            len(sources), f"Scanning {project.artifact_id}"
        )
        futures = [executor.submit(self.to_raw_artifact, f, mapper) for f in sources]
        for future in as_completed(futures):
            raw = future.result()
            if raw is not None:
                raw_files.append(raw)
            if progress_bar:
                progress_bar.update(1)
        if progress_bar:
            progress_bar.close()

        self.stats.sources_grouped = len(raw_files)
        # as_completed order varies; keep directory batches deterministic
        raw_files.sort(key=lambda r: r.base_path)
        return SiblingArtifactResolver.group_by_directory(raw_files)

    def aggregate(self, project: Project) -> Dict[str, Dict[str, List[Path]]]:
        """
        Build period -> author -> class files for one project.

        Raises:
            SourceTreeError: the project's source tree cannot be enumerated
        """
        grouping = ArtifactGrouping()
        with ThreadPoolExecutor(max_workers=self.config.worker_count) as executor:
            by_directory = self.collect_raw_artifacts(project, executor)
            futures = [
                executor.submit(self._resolve_into, grouping, directory, raws)
                for directory, raws in by_directory.items()
            ]
            for future in as_completed(futures):
                future.result()

        self.stats.directories_listed = self.resolver.listing_count
        self.stats.artifacts_found = len(grouping)
        logger.info("Java source file authors: %s", sorted(grouping.authors()))
        return grouping.to_dict()

    def _resolve_into(
        self, grouping: ArtifactGrouping, directory: Path, raws: List[RawArtifactFile]
    ):
        grouping.add_all(self.resolver.resolve_directory(directory, raws))


# ============================================================================
# ORCHESTRATION
# ============================================================================


class ProjectOrchestrator:
    """
    Drive report creation for a project or, for aggregation roots, for each of
    its reactor dependencies.

    An aggregation root is a project with ``pom`` packaging, or any project
    when aggregate_projects is set.
    """

    def __init__(
        self,
        project: Project,
        reactor: Reactor,
        config: AuthorcovConfig,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.project = project
        self.reactor = reactor
        self.config = config
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.errors: List[str] = []
        self.project_stats: Dict[str, AggregationStats] = {}

    def is_aggregation_root(self) -> bool:
        return self.config.aggregate_projects or self.project.packaging.lower() == "pom"

    def find_dependencies(self) -> List[Project]:
        return self.reactor.find_dependencies(self.project, REPORT_DEPENDENCY_SCOPES)

    def projects_to_scan(self) -> List[Project]:
        return self.find_dependencies() if self.is_aggregation_root() else [self.project]

    def create_report(
        self, visitor: ReportGroup, sink: ReportSink
    ) -> Dict[str, Dict[str, Dict[str, List[Path]]]]:
        """
        Group every project and hand each (period, author) batch to the sink.

        Returns:
            artifact id -> period -> author -> class files, for each scanned project
        """
        logger.info("Start generating date author aggregate coverage report")
        start = time.time()
        group = visitor.visit_group(self.config.title or self.project.display_name)

        results = {}
        if self.is_aggregation_root():
            for dependency in self.find_dependencies():
                results[dependency.artifact_id] = self._create_report(
                    group.visit_group(dependency.artifact_id), dependency, sink
                )
        else:
            results[self.project.artifact_id] = self._create_report(group, self.project, sink)

        seconds = time.time() - start
        logger.info("-" * 72)
        logger.info("Generate date author aggregate coverage report in %.3f s", seconds)
        logger.info("-" * 72)
        return results

    def _create_report(
        self, group: ReportGroup, project: Project, sink: ReportSink
    ) -> Dict[str, Dict[str, List[Path]]]:
        stage = f"Project {project.artifact_id}"
        self.reporter.stage_start(stage, str(project.source_directory))

        aggregator = ProjectAggregator(self.config, self.reporter)
        grouping = aggregator.aggregate(project)
        self.errors.extend(aggregator.errors)
        self.project_stats[project.artifact_id] = aggregator.stats

        for period, author_files in grouping.items():
            child = group.visit_group(period)
            for author, files in author_files.items():
                sink.process_project(child, author, project, files, self.config.source_encoding)

        seconds = self.reporter.stage_complete(
            stage,
            {
                "Sources scanned": aggregator.stats.sources_scanned,
                "Sources grouped": aggregator.stats.sources_grouped,
                "Directories listed": aggregator.stats.directories_listed,
                "Class files": aggregator.stats.artifacts_found,
            },
        )
        logger.info("Grouped %s in %.3f s", project.artifact_id, seconds)
        return grouping


# ============================================================================
# CLI INTERFACE
# ============================================================================


def configure_logging(verbose: bool = False, quiet: bool = False) -> logging.Handler:
    """Attach a stderr handler to the root logger and return it."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    return handler


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "project_dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    required=False,
)
@click.option("-o", "--output", type=click.Path(file_okay=False),
              help=f"Report output directory (default: {DEFAULT_OUTPUT_DIR})")
@click.option("--config", type=click.Path(exists=True, dir_okay=False),
              help="Configuration file path (.yaml or .json)")
# Tag options
@click.option("--date-tag", "date_tag_name", help="Javadoc tag holding the creation date")
@click.option("--date-pattern", "date_patterns", multiple=True,
              help="Accepted date pattern, tried in order (repeatable)")
@click.option("--author-tag", "author_tag_name", help="Javadoc tag holding the author")
@click.option("--author-delimiter", "author_delimiters", multiple=True,
              help="Substring that ends the author name (repeatable)")
@click.option("--baseline-date", help="Only include sources dated on or after this date")
@click.option("--period-format", help="Period label template with {year} and {month}")
# Project options
@click.option("--aggregate-projects", is_flag=True, default=None,
              help="Report every reactor dependency even if packaging is not pom")
@click.option("--include", "includes", multiple=True, help="Source include glob (repeatable)")
@click.option("--exclude", "excludes", multiple=True, help="Source exclude glob (repeatable)")
@click.option("--title", help="Name of the root report group")
@click.option("--encoding", "source_encoding", help="Source file encoding")
@click.option("-j", "--jobs", type=click.IntRange(min=1), help="Worker threads")
# Output control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, default=None, help="Show debug diagnostics")
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option("--dry-run", is_flag=True, help="Show what would be scanned and exit")
@click.version_option(version=VERSION)
def main(project_dir, config, dry_run, **kwargs):
    """
    Group compiled classes by the @date and @author tags of their sources.

    PROJECT_DIR is a Maven project directory (containing pom.xml).
    """
    if not project_dir:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    quiet = bool(kwargs.pop("quiet"))
    verbose = bool(kwargs.pop("verbose"))
    no_color = bool(kwargs.pop("no_color"))
    if not no_color:
        colorama_init()
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)
    handler = configure_logging(verbose=verbose, quiet=quiet)

    try:
        resolver = ConfigResolver(kwargs, config, project_dir)
        settings = AuthorcovConfig.from_resolver(resolver)
        project, reactor = Reactor.load(Path(project_dir))
        orchestrator = ProjectOrchestrator(project, reactor, settings, reporter)

        if dry_run:
            reporter.info("DRY RUN MODE - No sources will be scanned")
            reporter.info(f"Project: {project.artifact_id} ({project.packaging})")
            reporter.info(f"Aggregation root: {orchestrator.is_aggregation_root()}")
            for key, value in asdict(settings).items():
                reporter.info(f"  {key}: {value}")
            reporter.info("Projects to scan:")
            for scanned in orchestrator.projects_to_scan():
                reporter.info(f"  - {scanned.artifact_id}: {scanned.source_directory}")
            return

        output_dir = Path(settings.output)
        sink = ManifestReportSink(output_dir, title=settings.title or project.display_name)
        results = orchestrator.create_report(ReportGroup(), sink)
        paths = sink.write()

        if orchestrator.errors:
            with open(output_dir / "authorcov_errors.txt", "w", encoding="utf-8") as f:
                f.write("\n".join(orchestrator.errors))
            reporter.warning("Errors logged to authorcov_errors.txt")

        reporter.summary(
            {
                "Project": project.artifact_id,
                "Projects scanned": len(results),
                "Groups": len(sink.records),
                "Class files": sum(len(r.files) for r in sink.records),
                "Report": str(paths["json"]),
            }
        )
        reporter.success(f"Report written to: {output_dir}")
    except Exception as e:
        reporter.error(f"Report generation failed: {e}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)
    finally:
        logging.getLogger().removeHandler(handler)


if __name__ == "__main__":
    main()
