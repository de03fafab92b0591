"""Bootstrap analyzer tests for TaskWing.

Tests each analyzer over small on-disk repositories:
- FileWalker ignore rules and read limits
- Code symbols and call relationships (Python ast, Go patterns)
- Dependency manifests to decisions and toolchain constraints
- README sections and ADRs
- Package structure and import dependencies
- LLM analyzer JSON handling
- Parallel runtime ordering and failure isolation
"""

import json

import pytest

from taskwing.agents import (
    AgentInput,
    AgentRuntime,
    CodeAgent,
    DepsAgent,
    DocsAgent,
    FileWalker,
    LLMAgent,
    StreamingOutput,
    StructureAgent,
)
from taskwing.agents.base import Agent
from taskwing.agents.code import extract_by_pattern, extract_python, module_path_for
from taskwing.agents.docs import parse_bullet, readme_summary
from taskwing.agents.streaming import EventType
from taskwing.agents.structure import discover_packages
from taskwing.cancellation import CancellationToken
from taskwing.errors import ValidationError
from taskwing.models import EdgeKind, NodeType, SymbolKind


def make_input(root, **kwargs) -> AgentInput:
    return AgentInput(root=root, workspace_id="ws-agents", walker=FileWalker(root), **kwargs)


def titles(output, node_type=None) -> list[str]:
    return [f.title for f in output.findings if node_type is None or f.type == node_type]


class TestFileWalker:
    def test_builtin_and_gitignore_exclusions(self, write_tree):
        root = write_tree(
            {
                ".gitignore": "secret.txt\n",
                "a.py": "x = 1\n",
                "secret.txt": "key",
                "node_modules/lib/index.js": "module.exports = {}\n",
                "build/gen.py": "",
                ".git/config": "",
                "pkg/__pycache__/a.cpython-312.pyc": "",
            }
        )
        assert FileWalker(root).files() == [".gitignore", "a.py"]

    def test_binary_and_oversized_files_read_as_none(self, write_tree):
        root = write_tree({"big.txt": "x" * 100, "ok.txt": "fine"})
        (root / "blob.bin").write_bytes(b"\x00\x01\x02")
        walker = FileWalker(root, max_file_bytes=50)
        assert walker.read_text("blob.bin") is None
        assert walker.read_text("big.txt") is None
        assert walker.read_text("ok.txt") == "fine"

    def test_source_files_by_language(self, write_tree):
        root = write_tree({"a.py": "", "b.go": "", "c.ts": "", "README.md": ""})
        assert FileWalker(root).source_files() == ["a.py", "b.go", "c.ts"]


PY_SOURCE = '''"""Jobs."""
MAX_RETRIES = 3


def helper():
    """Help."""
    return 1


def run():
    return helper()


class Worker(Base):
    def start(self):
        self.step()

    def step(self):
        pass
'''

GO_SOURCE = """package server

// Server serves requests.
type Server struct {
\taddr string
}

func (s *Server) Start() error {
\treturn nil
}

func NewServer() *Server {
\treturn &Server{}
}
"""


class TestCodeExtraction:
    def test_python_symbols_and_calls(self):
        symbols = {s.name: s for s in extract_python(PY_SOURCE)}
        assert list(symbols) == ["MAX_RETRIES", "helper", "run", "Worker", "Worker.start", "Worker.step"]
        assert symbols["MAX_RETRIES"].kind == SymbolKind.CONSTANT
        assert symbols["helper"].doc == "Help."
        assert symbols["run"].calls == {"helper"}
        assert symbols["Worker"].signature == "class Worker(Base)"
        assert symbols["Worker.start"].calls == {"Worker.step"}

    def test_python_syntax_error_raises(self):
        with pytest.raises(SyntaxError):
            extract_python("def broken(:\n")

    def test_go_patterns(self):
        symbols = {s.name: s for s in extract_by_pattern(GO_SOURCE, "go")}
        assert symbols["Server"].kind == SymbolKind.STRUCT
        assert symbols["Server"].doc == "Server serves requests."
        assert (symbols["Server"].start_line, symbols["Server"].end_line) == (4, 6)
        assert symbols["Server.Start"].kind == SymbolKind.METHOD
        assert symbols["NewServer"].kind == SymbolKind.FUNCTION

    def test_module_path(self):
        assert module_path_for("pkg/sub/mod.py") == "pkg.sub.mod"
        assert module_path_for("pkg/__init__.py") == "pkg"


class TestCodeAgent:
    def test_symbols_and_call_edges(self, write_tree):
        root = write_tree({"pkg/jobs.py": PY_SOURCE, "pkg/broken.py": "def x(:\n", "server.go": GO_SOURCE})
        output = CodeAgent().run(make_input(root))

        assert output.error is None
        found = titles(output, NodeType.SYMBOL)
        assert "pkg.jobs.run" in found
        assert "server.Server.Start" in found
        calls = {(r.from_title, r.to_title) for r in output.relationships if r.kind == EdgeKind.CALLS}
        assert ("pkg.jobs.run", "pkg.jobs.helper") in calls
        assert output.coverage.files_considered == 3
        assert output.coverage.files_skipped == 1
        assert output.coverage.percent == pytest.approx(66.7)

    def test_symbol_metadata(self, write_tree):
        root = write_tree({"pkg/jobs.py": PY_SOURCE})
        output = CodeAgent().run(make_input(root))
        run = next(f for f in output.findings if f.title == "pkg.jobs.run")
        assert run.metadata["kind"] == "function"
        assert run.metadata["file_path"] == "pkg/jobs.py"
        assert run.evidence[0].start_line == 10

    def test_cancelled_before_start(self, write_tree):
        root = write_tree({"a.py": "def f():\n    pass\n"})
        token = CancellationToken()
        token.cancel()
        output = CodeAgent().run(make_input(root, cancel=token))
        assert output.cancelled
        assert not output.failed
        assert output.findings == []


PYPROJECT = """[project]
name = "shop"
requires-python = ">=3.11"
dependencies = [
    "httpx>=0.27",
    "loguru",
]
"""

GO_MOD = """module github.com/acme/shop

go 1.22

require (
\tgithub.com/gin-gonic/gin v1.9.1
\tgolang.org/x/text v0.14.0 // indirect
)
"""

CARGO = """[package]
name = "shop"
rust-version = "1.75"

[dependencies]
serde = { version = "1", features = ["derive"] }
tokio = "1"
"""


class TestDepsAgent:
    def test_pyproject(self, write_tree):
        root = write_tree({"pyproject.toml": PYPROJECT, "requirements.txt": "httpx==0.27  # dup\n-e .\n"})
        output = DepsAgent().run(make_input(root))

        assert titles(output, NodeType.DECISION) == ["Use httpx", "Use loguru"]
        assert titles(output, NodeType.CONSTRAINT) == ["Requires Python >=3.11"]
        loguru = next(f for f in output.findings if f.title == "Use loguru")
        assert loguru.metadata["one_liner"] == "loguru (logging)"
        assert loguru.evidence[0].file_path == "pyproject.toml"
        assert loguru.evidence[0].start_line == 6

    def test_package_json(self, write_tree):
        manifest = {"name": "web", "dependencies": {"express": "^4.18.0"}, "engines": {"node": ">=18"}}
        root = write_tree({"package.json": json.dumps(manifest, indent=2)})
        output = DepsAgent().run(make_input(root))
        assert titles(output) == ["Use express", "Requires Node >=18"]

    def test_go_mod_skips_indirect(self, write_tree):
        root = write_tree({"go.mod": GO_MOD})
        output = DepsAgent().run(make_input(root))
        assert titles(output) == ["Use github.com/gin-gonic/gin", "Requires Go 1.22"]

    def test_cargo(self, write_tree):
        root = write_tree({"Cargo.toml": CARGO})
        output = DepsAgent().run(make_input(root))
        assert titles(output) == ["Use serde", "Use tokio", "Requires Rust 1.75"]

    def test_invalid_manifest_is_skipped(self, write_tree):
        root = write_tree({"package.json": "{not json"})
        output = DepsAgent().run(make_input(root))
        assert output.error is None
        assert output.findings == []
        assert output.coverage.files_skipped == 1


README = """# Shop

[![build](https://ci/badge.svg)](https://ci)

Online shop backend.

## Features

- **Checkout**: Cart to order flow
- `Inventory` - Stock tracking

## Conventions

- Repository pattern: all DB access goes through repositories

## Install

- pip install shop
"""

ADR = """# ADR-001: Use PostgreSQL

## Status

Accepted

## Context

We need transactions.

## Decision

Use PostgreSQL for all persistent data.

## Consequences

Ops must run Postgres.
"""


class TestDocsAgent:
    def test_readme_sections(self, write_tree):
        root = write_tree({"README.md": README})
        output = DocsAgent().run(make_input(root))

        assert titles(output, NodeType.FEATURE) == ["Checkout", "Inventory"]
        assert titles(output, NodeType.PATTERN) == ["Repository pattern"]
        checkout = output.findings[0]
        assert checkout.metadata["one_liner"] == "Cart to order flow"
        assert checkout.evidence[0].start_line == 9

    def test_adr_becomes_decision(self, write_tree):
        root = write_tree({"docs/adr/0001-use-postgres.md": ADR})
        output = DocsAgent().run(make_input(root))

        decision = output.findings[0]
        assert decision.type == NodeType.DECISION
        assert decision.title == "Use PostgreSQL"
        assert decision.body == "Use PostgreSQL for all persistent data."
        assert decision.metadata["reasoning"] == "We need transactions."
        assert decision.metadata["adr_status"] == "accepted"
        assert decision.confidence == 0.85

    def test_superseded_adr_has_low_confidence(self, write_tree):
        root = write_tree({"decisions/0002.md": ADR.replace("Accepted", "Superseded by 0003")})
        output = DocsAgent().run(make_input(root))
        assert output.findings[0].confidence == 0.5

    def test_readme_summary_skips_badges(self):
        assert readme_summary(README) == ("Shop", "Online shop backend.")

    def test_parse_bullet(self):
        assert parse_bullet("- **Auth**: tokens") == ("Auth", "tokens")
        assert parse_bullet("not a bullet") is None


class TestStructureAgent:
    def test_sub_packages_and_imports(self, write_tree):
        root = write_tree(
            {
                "app/__init__.py": "",
                "app/api/__init__.py": '"""HTTP API."""\nfrom app.core import models\n',
                "app/api/routes.py": "import app.core.models\n",
                "app/core/__init__.py": '"""Core domain."""\n',
                "app/core/models.py": "X = 1\n",
                "tests/test_api.py": "import app.api\n",
            }
        )
        output = StructureAgent().run(make_input(root))

        assert titles(output, NodeType.FEATURE) == ["api", "core"]
        api = output.findings[0]
        assert api.metadata["one_liner"] == "HTTP API."
        assert api.metadata["path"] == "app/api"
        edges = [(r.from_title, r.to_title, r.kind) for r in output.relationships]
        assert edges == [("api", "core", EdgeKind.DEPENDS_ON)]

    def test_container_directories(self):
        packages = discover_packages(["src/billing/a.py", "src/users/b.py", "tests/test_a.py"])
        assert [p.path for p in packages] == ["src/billing", "src/users"]


class TestLLMAgent:
    def test_findings_cite_only_known_files(self, write_tree, make_chat):
        root = write_tree({"app.py": "", "README.md": "# App\n"})
        reply = json.dumps(
            {
                "findings": [
                    {
                        "type": "decision",
                        "title": "Use Redis for caching",
                        "body": "Hot reads are cached.",
                        "feature": "Cache",
                        "files": ["app.py", "ghost.py"],
                    },
                    {"type": "symbol", "title": "not allowed"},
                ],
                "relationships": [{"from": "Use Redis for caching", "to": "Cache", "kind": "weird"}],
            }
        )
        chat = make_chat(reply)
        stream = StreamingOutput()
        output = LLMAgent().run(make_input(root, chat=chat, stream=stream))

        assert titles(output) == ["Use Redis for caching"]
        finding = output.findings[0]
        assert [e.file_path for e in finding.evidence] == ["app.py"]
        assert finding.metadata["feature"] == "Cache"
        assert output.relationships[0].kind == EdgeKind.RELATED
        assert output.tokens_used == 10
        assert any(e.type == EventType.LLM_CALL for e in stream.events())

    def test_non_json_reply_yields_nothing(self, write_tree, make_chat):
        root = write_tree({"app.py": ""})
        output = LLMAgent().run(make_input(root, chat=make_chat("I cannot help with that.")))
        assert output.error is None
        assert output.findings == []

    def test_missing_chat_fails_agent(self, write_tree):
        root = write_tree({"app.py": ""})
        output = LLMAgent().run(make_input(root))
        assert output.failed
        assert isinstance(output.error, ValidationError)


class CrashingAgent(Agent):
    name = "crash"

    def analyze(self, agent_input, output):
        raise RuntimeError("boom")


class TestRuntime:
    def test_outputs_in_agent_order(self, write_tree):
        root = write_tree({"README.md": README, "pyproject.toml": PYPROJECT})
        outputs = AgentRuntime(workers=2).run([DocsAgent(), DepsAgent()], make_input(root))
        assert [o.agent for o in outputs] == ["doc", "deps"]
        assert all(o.error is None for o in outputs)

    def test_crashing_agent_is_isolated(self, write_tree):
        root = write_tree({"pyproject.toml": PYPROJECT})
        outputs = AgentRuntime(workers=2).run([CrashingAgent(), DepsAgent()], make_input(root))
        assert outputs[0].failed
        assert "RuntimeError: boom" in outputs[0].error.message
        assert outputs[1].findings

    def test_no_agents(self, write_tree):
        assert AgentRuntime().run([], make_input(write_tree({}))) == []
