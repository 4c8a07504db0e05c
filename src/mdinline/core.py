"""Core pipeline for mdinline."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from html import escape
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from bs4 import BeautifulSoup, Comment, Doctype, NavigableString, Tag
from bs4.element import PreformattedString
from markdown_it import MarkdownIt
from markdown_it.token import Token

from .host import FileEntry, Host

LOG = logging.getLogger("mdinline")

EXIT_INVALID_ARGS = 6
EXIT_CONVERSION = 10

PROTOCOL_RE = re.compile(r"[A-Za-z]+://.+")
WHITESPACE_RE = re.compile(r"\s+")

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "png": "image/png",
    "webp": "image/webp",
}
SVG_EXTENSION = "svg"
SVG_START = "<svg"

# Subtrees of these tags are emitted exactly as parsed.
VERBATIM_TAGS = frozenset({"pre", "code", "textarea", "svg"})
RAW_TEXT_TAGS = frozenset({"script", "style"})

STRING_SCHEMA = {"$schema": "http://json-schema.org/draft-07/schema#", "title": "String", "type": "string"}
BOOLEAN_SCHEMA = {"$schema": "http://json-schema.org/draft-07/schema#", "title": "Boolean", "type": "boolean"}

DEFAULT_PARAMS = {
    "input_extension": "md",
    "output_extension": "html",
    "include_artifact_mapping": False,
}


class ConversionError(RuntimeError):
    """Base class for failures that abort the conversion of one document."""


class PathPortabilityError(ConversionError):
    pass


class UnsupportedExtensionError(ConversionError):
    pass


class MissingExtensionError(UnsupportedExtensionError):
    pass


class FileAccessError(ConversionError):
    pass


class MalformedSvgError(ConversionError):
    pass


class EncodingError(ConversionError):
    pass


class UnsupportedNodeError(ConversionError):
    """An HTML node kind the normalizer never expects to see."""


class PathKind(Enum):
    EXTERNAL = "external"
    DATA_URI = "data_uri"
    RELATIVE = "relative"
    ABSOLUTE = "absolute"
    BACKSLASH = "backslash"


@dataclass
class ProcessingParams:
    input_extension: str = DEFAULT_PARAMS["input_extension"]
    output_extension: str = DEFAULT_PARAMS["output_extension"]
    include_artifact_mapping: bool = DEFAULT_PARAMS["include_artifact_mapping"]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ProcessingParams":
        parsed: Dict[str, Any] = {}
        for key, (required, schema) in get_params_schema().items():
            if key not in values:
                if required:
                    raise ValueError(f"Missing expected argument for parameter {key}")
                continue
            value = values[key]
            if schema["type"] == "string":
                if not isinstance(value, str) or not value.strip(".").strip():
                    raise ValueError(f"Parameter {key} must be a non-empty string")
            elif not isinstance(value, bool):
                raise ValueError(f"Parameter {key} must be a boolean")
            parsed[key] = value
        return cls(**parsed)


@dataclass
class BatchResult:
    converted: List[Tuple[str, str]] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    artifacts: Set[Tuple[str, str]] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.failures


def get_params_schema() -> Dict[str, Tuple[bool, Dict[str, Any]]]:
    return {
        "input_extension": (True, dict(STRING_SCHEMA)),
        "output_extension": (True, dict(STRING_SCHEMA)),
        "include_artifact_mapping": (True, dict(BOOLEAN_SCHEMA)),
    }


def write_params_file(path: Path, params: Optional[ProcessingParams] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = asdict(params or ProcessingParams())
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def load_params_file(path: Path) -> ProcessingParams:
    try:
        data_raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to read params file {path}: {exc}") from exc
    if not isinstance(data_raw, dict):
        raise ValueError(f"Params file {path} must contain a JSON object")
    try:
        return ProcessingParams.from_mapping(data_raw)
    except ValueError as exc:
        raise ValueError(f"Params file {path}: {exc}") from exc


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_mdinline_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_mdinline_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = int((clamped / total) * width)
    filled = min(filled, width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


# ---------------------------------------------------------------------------
# Markdown parsing


def build_markdown_parser() -> MarkdownIt:
    # html=True lets the inline SVG markup through the renderer untouched.
    md = MarkdownIt("commonmark", {"html": True}).enable("table")
    # Destinations stay exactly as written; the renderer still escapes them.
    md.validateLink = lambda url: True
    md.normalizeLink = lambda url: url
    md.normalizeLinkText = lambda url: url
    return md


class DocumentTree:
    """Mutable view over a markdown-it token stream.

    Tokens get an arena index the first time :meth:`descendants` reaches
    them. Indices stay valid for the lifetime of the tree, so structural
    edits can be queued during a walk and applied after it.
    """

    def __init__(self, md: MarkdownIt, tokens: List[Token], env: Optional[Dict[str, Any]] = None) -> None:
        self.md = md
        self.tokens = tokens
        self.env: Dict[str, Any] = env if env is not None else {}
        self._arena: List[Token] = []
        self._parents: List[Optional[int]] = []
        self._index_by_id: Dict[int, int] = {}

    def _register(self, token: Token, parent: Optional[int]) -> int:
        key = id(token)
        index = self._index_by_id.get(key)
        if index is None:
            index = len(self._arena)
            self._arena.append(token)
            self._parents.append(parent)
            self._index_by_id[key] = index
        return index

    def _walk(self, children: List[Token], parent: Optional[int]) -> Iterator[int]:
        for token in children:
            index = self._register(token, parent)
            yield index
            if token.children:
                yield from self._walk(token.children, index)

    def descendants(self) -> Iterator[int]:
        return self._walk(self.tokens, None)

    def node(self, index: int) -> Token:
        return self._arena[index]

    def children(self, index: int) -> List[int]:
        token = self._arena[index]
        return [self._register(child, index) for child in token.children or []]

    def _siblings(self, index: int) -> List[Token]:
        parent = self._parents[index]
        if parent is None:
            return self.tokens
        parent_token = self._arena[parent]
        if parent_token.children is None:
            parent_token.children = []
        return parent_token.children

    def detach(self, index: int) -> None:
        token = self._arena[index]
        siblings = self._siblings(index)
        for position, sibling in enumerate(siblings):
            if sibling is token:
                del siblings[position]
                return

    def replace_with_raw(self, index: int, markup: str) -> None:
        token = self._arena[index]
        token.type = "html_inline"
        token.tag = ""
        token.nesting = 0
        token.attrs = {}
        token.content = markup

    def render(self) -> str:
        return self.md.renderer.render(self.tokens, self.md.options, self.env)


def parse_document(markdown_text: str, md: Optional[MarkdownIt] = None) -> DocumentTree:
    md = md or build_markdown_parser()
    env: Dict[str, Any] = {}
    tokens = md.parse(markdown_text, env)
    return DocumentTree(md, tokens, env)


# ---------------------------------------------------------------------------
# Image inlining


def classify_url(url: str) -> PathKind:
    if PROTOCOL_RE.match(url):
        return PathKind.EXTERNAL
    if url.startswith("data:"):
        return PathKind.DATA_URI
    if "\\" in url:
        return PathKind.BACKSLASH
    if PurePosixPath(url).is_absolute():
        return PathKind.ABSOLUTE
    return PathKind.RELATIVE


def resolve_image_path(md_path: str, url: str) -> str:
    kind = classify_url(url)
    if kind is PathKind.BACKSLASH:
        raise PathPortabilityError(f"Path {url} contains backslash. Use forward slash, even on Windows.")
    if kind is PathKind.ABSOLUTE:
        raise PathPortabilityError(f"Path {url} is absolute. For portability reasons, this is not allowed.")
    return (PurePosixPath(md_path).parent / url).as_posix()


def image_extension(img_path: str) -> str:
    ext = PurePosixPath(img_path).suffix[1:]
    if not ext:
        raise MissingExtensionError(f"Image lacks an extension: {img_path}")
    if ext != SVG_EXTENSION and ext not in MIME_TYPES:
        raise UnsupportedExtensionError(f"Unsupported extension for {img_path}")
    return ext


def extract_svg_markup(svg_contents: str, img_path: str) -> str:
    start = svg_contents.find(SVG_START)
    if start < 0:
        raise MalformedSvgError(f"Could not find svg tag in svg file: {img_path}")
    return svg_contents[start:]


def _read_text(host: Host, relative_path: str) -> str:
    try:
        return host.read_text_file(relative_path)
    except OSError as exc:
        raise FileAccessError(f"Unable to read {relative_path}: {exc}") from exc


def _read_base64(host: Host, relative_path: str) -> str:
    try:
        return host.read_binary_file_base64(relative_path)
    except OSError as exc:
        raise FileAccessError(f"Unable to read {relative_path}: {exc}") from exc


def inline_images(tree: DocumentTree, md_path: str, host: Host) -> int:
    """Embed every relative image of ``tree`` and return how many were inlined.

    Raster images become base64 data URIs. SVG images are replaced by their
    ``<svg>`` markup; their alt-text children are detached once the walk is
    over, since removing tokens from a list that is being iterated skips the
    following siblings.
    """
    scrubbed: List[int] = []
    inlined = 0
    for index in tree.descendants():
        token = tree.node(index)
        if token.type != "image":
            continue
        url = str(token.attrGet("src") or "")
        kind = classify_url(url)
        if kind in (PathKind.EXTERNAL, PathKind.DATA_URI):
            LOG.debug("Leaving %s image untouched: %s", kind.value, url)
            continue
        img_path = resolve_image_path(md_path, url)
        ext = image_extension(img_path)
        if ext == SVG_EXTENSION:
            scrubbed.extend(tree.children(index))
            markup = extract_svg_markup(_read_text(host, img_path), img_path)
            tree.replace_with_raw(index, markup)
            LOG.debug("Inlined SVG %s", img_path)
        else:
            encoded = _read_base64(host, img_path)
            token.attrSet("src", f"data:{MIME_TYPES[ext]};base64,{encoded}")
            LOG.debug("Inlined %s as %s", img_path, MIME_TYPES[ext])
        inlined += 1
    for index in scrubbed:
        tree.detach(index)
    return inlined


# ---------------------------------------------------------------------------
# HTML normalization


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text)


def _escape_attribute(value: str) -> str:
    return value.replace("&", "&amp;").replace('"', "&quot;")


def _doctype_name(doctype: Doctype) -> str:
    parts = str(doctype).split()
    return parts[0] if parts else "html"


def _emit_node(node: Any, out: List[str]) -> None:
    if isinstance(node, BeautifulSoup):
        for child in node.children:
            _emit_node(child, out)
    elif isinstance(node, Tag):
        tag = node.name
        if tag in VERBATIM_TAGS:
            out.append(node.decode())
            return
        out.append(f"<{tag}")
        for attr_name, attr_value in node.attrs.items():
            if isinstance(attr_value, list):
                attr_value = " ".join(attr_value)
            out.append(f' {attr_name}="{_escape_attribute(str(attr_value))}"')
        out.append(">")
        if node.is_empty_element:
            return
        for child in node.children:
            _emit_node(child, out)
        out.append(f"</{tag}>")
    elif isinstance(node, Doctype):
        out.append(f"<!doctype {_doctype_name(node)}>")
    elif isinstance(node, Comment):
        return
    elif isinstance(node, PreformattedString):
        raise UnsupportedNodeError(f"Unsupported HTML node: {type(node).__name__}")
    elif isinstance(node, NavigableString):
        text = normalize_whitespace(str(node))
        parent = node.parent
        if parent is not None and parent.name in RAW_TEXT_TAGS:
            out.append(text)
        else:
            out.append(escape(text, quote=False))
    else:
        raise UnsupportedNodeError(f"Unsupported HTML node: {type(node).__name__}")


def normalize_document(document: BeautifulSoup) -> str:
    out: List[str] = []
    _emit_node(document, out)
    return "".join(out)


def normalize_html(html: str) -> str:
    return normalize_document(BeautifulSoup(html, "html5lib", multi_valued_attributes=None))


def _ensure_text(html: str) -> str:
    try:
        html.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodingError("Encoding error") from exc
    return html


# ---------------------------------------------------------------------------
# Conversion


def convert_markdown(markdown_text: str, md_path: str, host: Host) -> str:
    tree = parse_document(markdown_text)
    inlined = inline_images(tree, md_path, host)
    html = tree.render()
    LOG.debug("Rendered %s (%d inlined image(s))", md_path, inlined)
    return _ensure_text(normalize_html(html))


def convert(md_path: str, host: Host) -> str:
    md_path = PurePosixPath(md_path).as_posix()
    try:
        markdown_text = host.read_text_file(md_path)
    except OSError as exc:
        raise FileAccessError(f"Unable to read Markdown file {md_path}: {exc}") from exc
    LOG.info("Converting %s", md_path)
    return convert_markdown(markdown_text, md_path, host)


# ---------------------------------------------------------------------------
# Batch driver


def _normalize_extension(extension: str) -> str:
    return "." + extension.lstrip(".")


def matches_input_extension(entry: FileEntry, input_extension: str) -> bool:
    return not entry.is_dir and PurePosixPath(entry.relative_path).suffix == _normalize_extension(input_extension)


def output_path_for(relative_path: str, output_extension: str) -> str:
    return PurePosixPath(relative_path).with_suffix(_normalize_extension(output_extension)).as_posix()


def process_cluster(host: Host, params: ProcessingParams) -> BatchResult:
    entries = [e for e in host.get_directory_structure() if matches_input_extension(e, params.input_extension)]
    total = len(entries)
    result = BatchResult()
    for position, entry in enumerate(entries, start=1):
        source = entry.relative_path
        target = output_path_for(source, params.output_extension)
        _log_verbose_progress("Converting", position, total, detail=source)
        try:
            html = convert(source, host)
            host.write_text_file(target, html)
        except (ConversionError, OSError) as exc:
            LOG.error("Failed to convert %s: %s", source, exc)
            result.failures.append((source, str(exc)))
            continue
        result.converted.append((source, target))
        if params.include_artifact_mapping:
            result.artifacts.add((source, target))
    if total == 0:
        LOG.warning("No files with extension %s found", _normalize_extension(params.input_extension))
    return result
