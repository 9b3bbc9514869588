"""
Language registry: static per-language execution recipes.

Every language the engine knows about is described by one frozen
``LanguageDescriptor``. The table is built once at import time and exposed
through a read-only mapping; behaviour is selected by looking a language up,
never by subclassing.

Command templates may contain the following tokens, expanded per execution:

    {source}   mandated source filename (relative to the working directory)
    {stem}     source filename without extension
    {binary}   compiled artifact path
    {workdir}  absolute working directory
    {python}   host Python interpreter (fallback recipes only)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from ..core.config import LimitsConfig
from ..core.exceptions import UnsupportedLanguageError

MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Per-sandbox resource ceilings."""

    memory_bytes: int = 128 * MB
    cpu_quota: int = 50_000  # out of cpu_period (50% of one core)
    pids: int = 50
    nofile: int = 64
    nproc: int = 32

    def with_overrides(self, overrides: LimitsConfig | None) -> "ResourceLimits":
        if overrides is None:
            return self
        changes: dict[str, int] = {}
        if overrides.memory_mb:
            changes["memory_bytes"] = int(overrides.memory_mb) * MB
        if overrides.cpu_quota:
            changes["cpu_quota"] = int(overrides.cpu_quota)
        if overrides.pids:
            changes["pids"] = int(overrides.pids)
        if overrides.nofile:
            changes["nofile"] = int(overrides.nofile)
        if overrides.nproc:
            changes["nproc"] = int(overrides.nproc)
        return replace(self, **changes) if changes else self


SCRIPT_LIMITS = ResourceLimits()
COMPILED_LIMITS = ResourceLimits(memory_bytes=256 * MB)
HEAVY_LIMITS = ResourceLimits(memory_bytes=512 * MB, pids=128, nproc=128)


@dataclass(frozen=True, slots=True)
class LocalRecipe:
    """Host toolchain commands used by the fallback executor."""

    run: tuple[str, ...]
    compile: tuple[str, ...] | None = None

    @property
    def tools(self) -> tuple[str, ...]:
        """Executables that must be resolvable on the host."""
        names = []
        for command in (self.compile, self.run):
            if not command:
                continue
            head = command[0]
            if head.startswith("{") or head.startswith("./"):
                continue
            names.append(head)
        return tuple(dict.fromkeys(names))


@dataclass(frozen=True, slots=True)
class LanguageDescriptor:
    """Static configuration describing how to build and run one language."""

    id: str
    name: str
    extension: str
    runnable: bool
    category: str
    description: str
    image: str | None = None
    compile_command: tuple[str, ...] | None = None
    run_command: tuple[str, ...] = ()
    shell: bool = False  # commands are single strings run through `sh -c`
    filename: str | None = None
    scaffold: tuple[tuple[str, str], ...] = ()
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    timeout_ms: int = 10_000
    env: tuple[tuple[str, str], ...] = ()
    capabilities: tuple[str, ...] = ()
    local: LocalRecipe | None = None

    @property
    def source_filename(self) -> str:
        return self.filename or f"main.{self.extension}"

    @property
    def compiled(self) -> bool:
        return self.compile_command is not None

    def invocation(self, command: tuple[str, ...]) -> list[str]:
        """Return the argv for a sandbox command, shell-wrapping when required."""
        if self.shell:
            return ["sh", "-c", " ".join(command)]
        return list(command)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "extension": self.extension,
            "runnable": self.runnable,
            "category": self.category,
            "description": self.description,
        }


def render_command(template: tuple[str, ...], mapping: Mapping[str, str]) -> list[str]:
    """Expand ``{token}`` placeholders in every element of a command template."""
    return [render_token(token, mapping) for token in template]


def render_token(token: str, mapping: Mapping[str, str]) -> str:
    expanded = str(token)
    for key, value in mapping.items():
        expanded = expanded.replace("{" + key + "}", value)
    return expanded


def token_mapping(
    descriptor: LanguageDescriptor,
    workdir: str,
    *,
    binary: str,
    python: str | None = None,
) -> dict[str, str]:
    """Build the placeholder values for one execution of ``descriptor``."""
    source = descriptor.source_filename
    mapping = {
        "source": source,
        "stem": source.rsplit(".", 1)[0],
        "binary": binary,
        "workdir": workdir,
    }
    if python:
        mapping["python"] = python
    return mapping


_CSPROJ = """<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <OutputType>Exe</OutputType>
    <TargetFramework>net7.0</TargetFramework>
    <ImplicitUsings>enable</ImplicitUsings>
    <Nullable>enable</Nullable>
    <AssemblyName>Program</AssemblyName>
  </PropertyGroup>
</Project>
"""


def _markup(language_id: str, name: str, extension: str, category: str, description: str):
    return LanguageDescriptor(
        id=language_id,
        name=name,
        extension=extension,
        runnable=False,
        category=category,
        description=description,
    )


_DESCRIPTORS: tuple[LanguageDescriptor, ...] = (
    # Scripting languages
    LanguageDescriptor(
        id="javascript",
        name="JavaScript",
        extension="js",
        runnable=True,
        category="scripting",
        description="JavaScript runtime with Node.js",
        image="node:18-alpine",
        run_command=("node", "{source}"),
        local=LocalRecipe(run=("node", "{source}")),
    ),
    LanguageDescriptor(
        id="python",
        name="Python",
        extension="py",
        runnable=True,
        category="scripting",
        description="Python interpreter",
        image="python:3.11-alpine",
        run_command=("python", "-u", "{source}"),
        env=(("PYTHONDONTWRITEBYTECODE", "1"),),
        local=LocalRecipe(run=("{python}", "-u", "{source}")),
    ),
    LanguageDescriptor(
        id="ruby",
        name="Ruby",
        extension="rb",
        runnable=True,
        category="scripting",
        description="Ruby interpreter",
        image="ruby:3.2-alpine",
        run_command=("ruby", "{source}"),
        local=LocalRecipe(run=("ruby", "{source}")),
    ),
    LanguageDescriptor(
        id="php",
        name="PHP",
        extension="php",
        runnable=True,
        category="scripting",
        description="PHP interpreter",
        image="php:8.2-cli-alpine",
        run_command=("php", "{source}"),
        local=LocalRecipe(run=("php", "{source}")),
    ),
    LanguageDescriptor(
        id="go",
        name="Go",
        extension="go",
        runnable=True,
        category="compiled",
        description="Go compiler and runtime",
        image="golang:1.21-alpine",
        compile_command=("go", "build", "-o", "{binary}", "{source}"),
        run_command=("{binary}",),
        limits=replace(COMPILED_LIMITS, pids=128, nproc=128),
        timeout_ms=15_000,
        env=(("GOCACHE", "{workdir}/.gocache"), ("CGO_ENABLED", "0")),
        local=LocalRecipe(compile=("go", "build", "-o", "{binary}", "{source}"), run=("{binary}",)),
    ),
    LanguageDescriptor(
        id="rust",
        name="Rust",
        extension="rs",
        runnable=True,
        category="compiled",
        description="Rust compiler",
        image="rust:1.75-alpine",
        compile_command=("rustc", "-o", "{binary}", "{source}"),
        run_command=("{binary}",),
        limits=COMPILED_LIMITS,
        timeout_ms=20_000,
        local=LocalRecipe(compile=("rustc", "-o", "{binary}", "{source}"), run=("{binary}",)),
    ),
    LanguageDescriptor(
        id="java",
        name="Java",
        extension="java",
        runnable=True,
        category="compiled",
        description="Java compiler and runtime",
        image="eclipse-temurin:17-jdk-alpine",
        compile_command=("javac", "{source}"),
        run_command=("java", "-cp", ".", "{stem}"),
        # javac requires the file name to match the public class
        filename="Main.java",
        limits=replace(COMPILED_LIMITS, pids=128, nproc=128),
        timeout_ms=20_000,
        local=LocalRecipe(compile=("javac", "{source}"), run=("java", "-cp", "{workdir}", "{stem}")),
    ),
    LanguageDescriptor(
        id="cpp",
        name="C++",
        extension="cpp",
        runnable=True,
        category="compiled",
        description="C++ compiler (GCC)",
        image="gcc:12",
        compile_command=("g++", "-O2", "-o", "{binary}", "{source}"),
        run_command=("{binary}",),
        limits=COMPILED_LIMITS,
        timeout_ms=20_000,
        local=LocalRecipe(compile=("g++", "-O2", "-o", "{binary}", "{source}"), run=("{binary}",)),
    ),
    LanguageDescriptor(
        id="c",
        name="C",
        extension="c",
        runnable=True,
        category="compiled",
        description="C compiler (GCC)",
        image="gcc:12",
        compile_command=("gcc", "-O2", "-o", "{binary}", "{source}"),
        run_command=("{binary}",),
        limits=COMPILED_LIMITS,
        timeout_ms=20_000,
        local=LocalRecipe(compile=("gcc", "-O2", "-o", "{binary}", "{source}"), run=("{binary}",)),
    ),
    LanguageDescriptor(
        id="csharp",
        name="C#",
        extension="cs",
        runnable=True,
        category="compiled",
        description="C# compiler (.NET)",
        image="mcr.microsoft.com/dotnet/sdk:7.0-alpine",
        # dotnet reports build errors on stdout
        compile_command=(
            "dotnet build Program.csproj --nologo -v q -o out > build.log"
            " || { cat build.log >&2; exit 1; }",
        ),
        run_command=("dotnet out/Program.dll",),
        shell=True,
        scaffold=(("Program.csproj", _CSPROJ),),
        limits=HEAVY_LIMITS,
        timeout_ms=30_000,
        env=(
            ("DOTNET_CLI_HOME", "{workdir}"),
            ("DOTNET_CLI_TELEMETRY_OPTOUT", "1"),
            ("DOTNET_NOLOGO", "1"),
            ("NUGET_PACKAGES", "{workdir}/.nuget"),
        ),
        local=LocalRecipe(compile=("csc", "-nologo", "-out:main.exe", "{source}"), run=("mono", "main.exe")),
    ),
    LanguageDescriptor(
        id="typescript",
        name="TypeScript",
        extension="ts",
        runnable=True,
        category="scripting",
        description="TypeScript runtime (Deno)",
        image="denoland/deno:alpine-1.40.0",
        run_command=("deno", "run", "--quiet", "--no-prompt", "{source}"),
        limits=COMPILED_LIMITS,
        timeout_ms=20_000,
        env=(("DENO_DIR", "{workdir}/.deno"),),
        local=LocalRecipe(run=("ts-node", "{source}")),
    ),
    LanguageDescriptor(
        id="swift",
        name="Swift",
        extension="swift",
        runnable=True,
        category="compiled",
        description="Swift compiler",
        image="swift:5.9-focal",
        compile_command=("swiftc", "-o", "{binary}", "{source}"),
        run_command=("{binary}",),
        limits=COMPILED_LIMITS,
        timeout_ms=20_000,
        local=LocalRecipe(run=("swift", "{source}")),
    ),
    LanguageDescriptor(
        id="kotlin",
        name="Kotlin",
        extension="kt",
        runnable=True,
        category="compiled",
        description="Kotlin compiler",
        image="zenika/kotlin:1.9-jdk17-alpine",
        compile_command=("kotlinc", "{source}", "-include-runtime", "-d", "main.jar"),
        run_command=("java", "-jar", "main.jar"),
        limits=HEAVY_LIMITS,
        timeout_ms=30_000,
        local=LocalRecipe(
            compile=("kotlinc", "{source}", "-include-runtime", "-d", "main.jar"),
            run=("java", "-jar", "main.jar"),
        ),
    ),
    LanguageDescriptor(
        id="scala",
        name="Scala",
        extension="scala",
        runnable=True,
        category="compiled",
        description="Scala interpreter",
        image="hseeberger/scala-sbt:17.0.2_1.6.2_3.1.1",
        run_command=("scala", "{source}"),
        limits=HEAVY_LIMITS,
        timeout_ms=30_000,
        local=LocalRecipe(run=("scala", "{source}")),
    ),
    LanguageDescriptor(
        id="r",
        name="R",
        extension="r",
        runnable=True,
        category="statistical",
        description="R statistical computing",
        image="r-base:4.3.2",
        run_command=("Rscript", "{source}"),
        limits=COMPILED_LIMITS,
        timeout_ms=15_000,
        local=LocalRecipe(run=("Rscript", "{source}")),
    ),
    LanguageDescriptor(
        id="lua",
        name="Lua",
        extension="lua",
        runnable=True,
        category="scripting",
        description="Lua interpreter",
        image="nickblah/lua:5.4-alpine",
        run_command=("lua", "{source}"),
        local=LocalRecipe(run=("lua", "{source}")),
    ),
    LanguageDescriptor(
        id="dart",
        name="Dart",
        extension="dart",
        runnable=True,
        category="compiled",
        description="Dart runtime",
        image="dart:3.2-sdk",
        run_command=("dart", "run", "{source}"),
        limits=COMPILED_LIMITS,
        timeout_ms=15_000,
        env=(("PUB_CACHE", "{workdir}/.pub-cache"),),
        local=LocalRecipe(run=("dart", "run", "{source}")),
    ),
    LanguageDescriptor(
        id="perl",
        name="Perl",
        extension="pl",
        runnable=True,
        category="scripting",
        description="Perl interpreter",
        image="perl:5.38-slim",
        run_command=("perl", "{source}"),
        local=LocalRecipe(run=("perl", "{source}")),
    ),
    LanguageDescriptor(
        id="bash",
        name="Bash",
        extension="sh",
        runnable=True,
        category="scripting",
        description="Bash shell script",
        image="bash:5.2-alpine3.18",
        run_command=("bash", "{source}"),
        limits=replace(SCRIPT_LIMITS, memory_bytes=64 * MB),
        local=LocalRecipe(run=("bash", "{source}")),
    ),
    # Highlighting only
    _markup("html", "HTML", "html", "markup", "HyperText Markup Language"),
    _markup("css", "CSS", "css", "styling", "Cascading Style Sheets"),
    _markup("sql", "SQL", "sql", "database", "Structured Query Language"),
    _markup("plsql", "PL/SQL", "sql", "database", "Oracle PL/SQL"),
    _markup("json", "JSON", "json", "data", "JavaScript Object Notation"),
    _markup("xml", "XML", "xml", "markup", "eXtensible Markup Language"),
    _markup("yaml", "YAML", "yaml", "data", "YAML Ain't Markup Language"),
    _markup("markdown", "Markdown", "md", "markup", "Markdown markup language"),
    _markup("assembly", "Assembly", "asm", "low-level", "Assembly language"),
    _markup("dockerfile", "Dockerfile", "dockerfile", "config", "Docker container configuration"),
    _markup("nginx", "Nginx Config", "conf", "config", "Nginx configuration"),
)

LANGUAGES: Mapping[str, LanguageDescriptor] = MappingProxyType(
    {descriptor.id: descriptor for descriptor in _DESCRIPTORS}
)

ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "js": "javascript",
        "node": "javascript",
        "py": "python",
        "python3": "python",
        "rb": "ruby",
        "golang": "go",
        "rs": "rust",
        "c++": "cpp",
        "cs": "csharp",
        "c#": "csharp",
        "ts": "typescript",
        "kt": "kotlin",
        "sh": "bash",
        "shell": "bash",
        "md": "markdown",
    }
)


def get_language(language_id: str) -> LanguageDescriptor:
    """Look up a descriptor by id or alias."""
    normalized = (language_id or "").strip().lower()
    normalized = ALIASES.get(normalized, normalized)
    descriptor = LANGUAGES.get(normalized)
    if descriptor is None:
        raise UnsupportedLanguageError(language_id)
    return descriptor


def list_languages() -> list[LanguageDescriptor]:
    """Return every known language in registry order."""
    return list(LANGUAGES.values())


def runnable_languages() -> list[LanguageDescriptor]:
    return [descriptor for descriptor in LANGUAGES.values() if descriptor.runnable]
