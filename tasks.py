from __future__ import annotations

import logging
import pathlib
from typing import TYPE_CHECKING, Final

from invoke.tasks import task

if TYPE_CHECKING:
    from invoke.context import Context

LOGGER: Final[logging.Logger] = logging.getLogger(__name__)

PROJECT_ROOT: Final[pathlib.Path] = pathlib.Path(__file__).parent
TESTS_DIR: Final[pathlib.Path] = PROJECT_ROOT / "tests"
MANUALS_DIR: Final[pathlib.Path] = TESTS_DIR / "manuals"

MANUAL_TEMPLATE: Final[str] = """.Dd $Mdocdate$
.Dt {title} {section}
.Os
.Sh NAME
.Nm {name}
.Nd {description}
.Sh DESCRIPTION
The options are as follows:
.Bl -tag -width Ds
.It Fl h
Print a help message and exit.
.It Fl v
Print the version and exit.
.It Fl x
Placeholder, keeps the option above it resolvable.
.El
"""


@task
def fmt(ctx: Context, check: bool = False) -> None:
    """Format code with ruff format"""
    cmds = ["ruff", "format", "."]
    if check:
        cmds.append("--check")
    ctx.run(" ".join(cmds), echo=True, pty=True)


@task(
    help={
        "check": "Check code without fixing it",
        "unsafe-fixes": "Apply 'un-safe' fixes. See https://docs.astral.sh/ruff/linter/#fix-safety",
    }
)
def lint(ctx: Context, check: bool = False, unsafe_fixes: bool = False) -> None:
    """Lint and fix code with ruff"""
    cmds = ["ruff", "check", "."]
    if not check:
        cmds.append("--fix")
    if unsafe_fixes:
        cmds.extend(["--unsafe-fixes", "--show-fixes"])
    ctx.run(" ".join(cmds), echo=True, pty=True)


@task(
    aliases=["types"],
)
def type_check(ctx: Context, install_types: bool = False, check: bool = False) -> None:
    """Type check code with mypy"""
    cmds = ["mypy"]
    if install_types:
        cmds.append("--install-types")
    if check:
        cmds.extend(["--pretty"])
    ctx.run(" ".join(cmds), echo=True, pty=True)


@task(aliases=["sync"])
def deps(ctx: Context) -> None:
    """Sync dependencies with poetry lock file"""
    cmds = ["poetry", "install", "--sync", "--all-extras"]
    ctx.run(" ".join(cmds), echo=True, pty=True)


@task(help={"keyword": "Only run tests matching the given expression"})
def test(ctx: Context, keyword: str | None = None) -> None:
    """Run the test suite with pytest"""
    cmds = ["pytest", "-vv"]
    if keyword:
        cmds.extend(["-k", f"'{keyword}'"])
    ctx.run(" ".join(cmds), echo=True, pty=True)


@task(aliases=["new-case"])
def new_manual(
    ctx: Context, name: str, section: str = "1", description: str | None = None
) -> None:
    """Create a new sample manual page for the extraction tests"""
    if not description:
        description = f"sample utility {name}"
    manual = MANUALS_DIR / f"{name}.{section}"
    if manual.exists():
        raise FileExistsError(f"{manual.name} already exists")
    manual.write_text(
        MANUAL_TEMPLATE.format(
            title=name.upper(), section=section, name=name, description=description
        )
    )
    print(f"📄 {manual.name}")
    print(f"🎉 Created manual page for '{name}' test case")
