"""Code analyzer: symbols and call relationships.

Python files are parsed with the ``ast`` module (functions, classes, methods,
module constants, plus intra-module calls). Go, JavaScript/TypeScript and Rust
use line-oriented declaration patterns; their symbols carry no call edges.
"""

import ast
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.agents.files import language_for
from taskwing.log_config import get_logger
from taskwing.models import EdgeKind, EvidenceRef, Finding, NodeType, Relationship, SymbolKind

log = get_logger("agents.code")

MAX_DOC_CHARS = 500


@dataclass
class ExtractedSymbol:
    name: str
    kind: SymbolKind
    start_line: int
    end_line: int
    signature: str = ""
    doc: str = ""
    calls: set[str] = field(default_factory=set)


def module_path_for(rel_path: str) -> str:
    """Dotted module path: "pkg/sub/mod.py" -> "pkg.sub.mod"; "pkg/__init__.py" -> "pkg"."""
    path = PurePosixPath(rel_path)
    parts = list(path.with_suffix("").parts)
    if parts and parts[-1] in ("__init__", "index", "mod", "lib") and len(parts) > 1:
        parts = parts[:-1]
    return ".".join(parts)


# =============================================================================
# Python
# =============================================================================


def _first_doc_line(doc: str | None) -> str:
    if not doc:
        return ""
    return doc.strip()[:MAX_DOC_CHARS]


def _signature(node: ast.FunctionDef | ast.AsyncFunctionDef) -> str:
    prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
    returns = f" -> {ast.unparse(node.returns)}" if node.returns is not None else ""
    return f"{prefix} {node.name}({ast.unparse(node.args)}){returns}"


class _CallCollector(ast.NodeVisitor):
    """Collects bare-name calls and ``self.method`` calls inside one function body."""

    def __init__(self):
        self.names: set[str] = set()
        self.self_methods: set[str] = set()

    def visit_Call(self, node: ast.Call):
        func = node.func
        if isinstance(func, ast.Name):
            self.names.add(func.id)
        elif (
            isinstance(func, ast.Attribute)
            and isinstance(func.value, ast.Name)
            and func.value.id in ("self", "cls")
        ):
            self.self_methods.add(func.attr)
        self.generic_visit(node)


def extract_python(source: str) -> list[ExtractedSymbol]:
    """Top-level functions, classes with their methods, and UPPER_CASE constants.

    Raises:
        SyntaxError: If the source does not parse
    """
    tree = ast.parse(source)
    symbols: list[ExtractedSymbol] = []
    top_functions: set[str] = set()
    pending_calls: list[tuple[ExtractedSymbol, _CallCollector, str | None, set[str]]] = []

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            top_functions.add(node.name)

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            sym = ExtractedSymbol(
                name=node.name,
                kind=SymbolKind.FUNCTION,
                start_line=node.lineno,
                end_line=node.end_lineno or node.lineno,
                signature=_signature(node),
                doc=_first_doc_line(ast.get_docstring(node)),
            )
            collector = _CallCollector()
            collector.visit(node)
            pending_calls.append((sym, collector, None, set()))
            symbols.append(sym)
        elif isinstance(node, ast.ClassDef):
            bases = ", ".join(ast.unparse(b) for b in node.bases)
            symbols.append(
                ExtractedSymbol(
                    name=node.name,
                    kind=SymbolKind.TYPE,
                    start_line=node.lineno,
                    end_line=node.end_lineno or node.lineno,
                    signature=f"class {node.name}({bases})" if bases else f"class {node.name}",
                    doc=_first_doc_line(ast.get_docstring(node)),
                )
            )
            methods = {
                item.name for item in node.body if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
            }
            for item in node.body:
                if not isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    continue
                sym = ExtractedSymbol(
                    name=f"{node.name}.{item.name}",
                    kind=SymbolKind.METHOD,
                    start_line=item.lineno,
                    end_line=item.end_lineno or item.lineno,
                    signature=_signature(item),
                    doc=_first_doc_line(ast.get_docstring(item)),
                )
                collector = _CallCollector()
                collector.visit(item)
                pending_calls.append((sym, collector, node.name, methods))
                symbols.append(sym)
        elif isinstance(node, (ast.Assign, ast.AnnAssign)):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            for target in targets:
                if isinstance(target, ast.Name) and target.id.isupper():
                    symbols.append(
                        ExtractedSymbol(
                            name=target.id,
                            kind=SymbolKind.CONSTANT,
                            start_line=node.lineno,
                            end_line=node.end_lineno or node.lineno,
                        )
                    )

    for sym, collector, class_name, methods in pending_calls:
        sym.calls = {n for n in collector.names if n in top_functions}
        if class_name:
            sym.calls |= {f"{class_name}.{m}" for m in collector.self_methods if m in methods}
        sym.calls.discard(sym.name)
    return symbols


# =============================================================================
# Regex-based languages
# =============================================================================

_GO_PATTERNS = [
    (re.compile(r"^func\s+\((?P<recv>[^)]*)\)\s*(?P<name>\w+)\s*\("), SymbolKind.METHOD),
    (re.compile(r"^func\s+(?P<name>\w+)\s*[\[(]"), SymbolKind.FUNCTION),
    (re.compile(r"^type\s+(?P<name>\w+)\s+struct\b"), SymbolKind.STRUCT),
    (re.compile(r"^type\s+(?P<name>\w+)\s+interface\b"), SymbolKind.INTERFACE),
    (re.compile(r"^type\s+(?P<name>\w+)\s+"), SymbolKind.TYPE),
]

_JS_PATTERNS = [
    (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+(?P<name>\w+)\s*\("), SymbolKind.FUNCTION),
    (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(?P<name>\w+)"), SymbolKind.TYPE),
    (re.compile(r"^(?:export\s+)?interface\s+(?P<name>\w+)"), SymbolKind.INTERFACE),
    (re.compile(r"^(?:export\s+)?type\s+(?P<name>\w+)\s*(?:<[^=]*>)?\s*="), SymbolKind.TYPE),
    (
        re.compile(r"^(?:export\s+)?const\s+(?P<name>\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?(?:\([^)]*\)|\w+)\s*=>"),
        SymbolKind.FUNCTION,
    ),
    (re.compile(r"^(?:export\s+)?const\s+(?P<name>[A-Z][A-Z0-9_]+)\s*="), SymbolKind.CONSTANT),
]

_RUST_PATTERNS = [
    (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(?P<name>\w+)"), SymbolKind.FUNCTION),
    (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?struct\s+(?P<name>\w+)"), SymbolKind.STRUCT),
    (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?enum\s+(?P<name>\w+)"), SymbolKind.TYPE),
    (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?trait\s+(?P<name>\w+)"), SymbolKind.INTERFACE),
    (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?const\s+(?P<name>\w+)"), SymbolKind.CONSTANT),
]

_PATTERNS_BY_LANGUAGE = {
    "go": _GO_PATTERNS,
    "javascript": _JS_PATTERNS,
    "typescript": _JS_PATTERNS,
    "rust": _RUST_PATTERNS,
}

_GO_RECEIVER_RE = re.compile(r"\*?\s*(\w+)\s*(?:\[[^\]]*\])?\s*$")


def _block_end(lines: list[str], start: int) -> int:
    """Last line (1-based) of the brace block opened at or after ``start`` (0-based)."""
    depth = 0
    opened = False
    for i in range(start, len(lines)):
        for ch in lines[i]:
            if ch == "{":
                depth += 1
                opened = True
            elif ch == "}":
                depth -= 1
        if opened and depth <= 0:
            return i + 1
        if not opened and lines[i].rstrip().endswith(";"):
            return i + 1
    return start + 1


def _leading_comment(lines: list[str], index: int) -> str:
    doc: list[str] = []
    i = index - 1
    while i >= 0:
        stripped = lines[i].strip()
        if stripped.startswith("//") or stripped.startswith("///"):
            doc.append(stripped.lstrip("/").strip())
        elif stripped.startswith("*") or stripped.startswith("/**"):
            doc.append(stripped.lstrip("/*").strip())
        else:
            break
        i -= 1
    return "\n".join(reversed([d for d in doc if d]))[:MAX_DOC_CHARS]


def extract_by_pattern(source: str, language: str) -> list[ExtractedSymbol]:
    patterns = _PATTERNS_BY_LANGUAGE.get(language, [])
    lines = source.splitlines()
    symbols: list[ExtractedSymbol] = []
    for i, line in enumerate(lines):
        # Top-level declarations only
        if not line or line[0].isspace():
            continue
        for pattern, kind in patterns:
            m = pattern.match(line)
            if not m:
                continue
            name = m.group("name")
            if language == "go" and kind == SymbolKind.METHOD:
                recv = _GO_RECEIVER_RE.search(m.group("recv"))
                if recv:
                    name = f"{recv.group(1)}.{name}"
            symbols.append(
                ExtractedSymbol(
                    name=name,
                    kind=kind,
                    start_line=i + 1,
                    end_line=_block_end(lines, i),
                    signature=line.strip().rstrip("{").strip(),
                    doc=_leading_comment(lines, i),
                )
            )
            break
    return symbols


# =============================================================================
# Agent
# =============================================================================


class CodeAgent(Agent):
    """Emits one Symbol finding per declaration and ``calls`` relationships."""

    name = "code"

    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        for rel_path in agent_input.walker.source_files():
            self.consider_file(agent_input, output, rel_path)
            language = language_for(rel_path)
            source = agent_input.walker.read_text(rel_path)
            if source is None or language is None:
                output.coverage.files_skipped += 1
                continue
            try:
                if language == "python":
                    symbols = extract_python(source)
                else:
                    symbols = extract_by_pattern(source, language)
            except (SyntaxError, ValueError) as e:
                log.debug(f"Skipping unparsable {rel_path}: {e}")
                output.coverage.files_skipped += 1
                continue
            output.coverage.files_analyzed += 1
            self._emit_symbols(agent_input, output, rel_path, language, symbols)

    def _emit_symbols(
        self,
        agent_input: AgentInput,
        output: AgentOutput,
        rel_path: str,
        language: str,
        symbols: list[ExtractedSymbol],
    ) -> None:
        module = module_path_for(rel_path)
        for sym in symbols:
            qualified = f"{module}.{sym.name}" if module else sym.name
            self.emit_finding(
                agent_input,
                output,
                Finding(
                    agent=self.name,
                    type=NodeType.SYMBOL,
                    title=qualified,
                    body=sym.doc,
                    evidence=[EvidenceRef(rel_path, sym.start_line, sym.end_line)],
                    metadata={
                        "kind": sym.kind.value,
                        "file_path": rel_path,
                        "start_line": sym.start_line,
                        "end_line": sym.end_line,
                        "signature": sym.signature,
                        "doc_comment": sym.doc,
                        "module_path": module,
                        "language": language,
                    },
                ),
            )
            for callee in sorted(sym.calls):
                output.relationships.append(
                    Relationship(
                        from_title=qualified,
                        to_title=f"{module}.{callee}" if module else callee,
                        kind=EdgeKind.CALLS,
                        evidence=f"{rel_path}:{sym.start_line}",
                        from_type=NodeType.SYMBOL,
                        to_type=NodeType.SYMBOL,
                    )
                )
