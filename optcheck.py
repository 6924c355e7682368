from __future__ import annotations

import contextlib
import io
import logging
import os
import pathlib
import select
import shlex
import signal
import subprocess
import sys
import warnings
from argparse import ArgumentParser, ArgumentTypeError
from enum import Enum
from typing import IO, TYPE_CHECKING, Any, Final, Literal, NamedTuple, Protocol, Union

import tomlkit

if TYPE_CHECKING:
    from collections.abc import Generator, Iterable, Iterator, Mapping, Sequence

__version__ = "0.0.1.dev0"

LOGGER = logging.getLogger(__name__)

OPTION_MARKER: Final[str] = ".It Fl"
DEFAULT_SECTIONS: Final[tuple[str, ...]] = ("1", "8")
DEFAULT_SHELL: Final[str] = "/bin/sh"
# seconds to wait for the child's output before it is reclaimed
TIMEOUT: Final[float] = 2.0
# seconds a terminated child gets before SIGKILL
KILL_GRACE: Final[float] = 1.0


class OptionType(Enum):
    SHORT = "s"
    LONG = "l"


class OptionDefinition(NamedTuple):
    option_type: OptionType
    value: str
    keyword: str

    @property
    def flag(self) -> str:
        """The option as it is spelled on a command line, e.g. ``-h``."""
        if self.option_type is OptionType.LONG:
            return f"--{self.value}"
        return f"-{self.value}"


class OptionTable:
    """
    Registry of the options whose effect can be checked from a utility's output.
    Entries are keyed by the option value, later inserts replace earlier ones.
    """

    def __init__(self, definitions: Iterable[OptionDefinition] = ()) -> None:
        self._entries: dict[str, OptionDefinition] = {}
        for definition in definitions:
            self.insert(definition)

    @classmethod
    def default(cls) -> OptionTable:
        # TODO: add long options once the extractor recognizes `.It Fl -name`
        return cls(
            [
                OptionDefinition(OptionType.SHORT, "h", "help"),
                OptionDefinition(OptionType.SHORT, "v", "version"),
            ]
        )

    def insert(self, definition: OptionDefinition) -> None:
        self._entries[definition.value] = definition

    def lookup(self, key: str) -> OptionDefinition | None:
        return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[OptionDefinition]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._entries.values())!r})"


class ManualSource(Protocol):
    def read(self, utility: str, section: str) -> str | None: ...


class DirectoryManualSource:
    """Manual pages stored as ``<root>/<utility>.<section>`` files."""

    def __init__(self, root: str | pathlib.Path) -> None:
        self.root = pathlib.Path(root)

    def read(self, utility: str, section: str) -> str | None:
        page = self.root / f"{utility}.{section}"
        if not page.is_file():
            return None
        return page.read_text(errors="replace")


def extract_options(
    manual: str | Iterable[str], table: OptionTable, marker: str = OPTION_MARKER
) -> list[OptionDefinition]:
    """
    Find the options declared in mdoc manual text that are also in `table`.

    A declared option is matched when the text between its declaration and the next
    one contains the option's keyword. Each option is matched at most once. The last
    declared option has no closing declaration and is never matched.

    Args:
        manual: The manual text, or its lines without line terminators.
        table: The testable options.
        marker: The macro that introduces an option declaration.

    Returns:
        list[OptionDefinition]: The matched options, in the order they were resolved.
    """
    if isinstance(manual, str):
        manual = manual.splitlines()

    matched: list[OptionDefinition] = []
    resolved: set[str] = set()
    pending: list[str] = []
    description: list[str] = []

    for line in manual:
        found = line.find(marker)
        if found == -1:
            description.append(line)
            continue

        start = found + len(marker) + 1
        if start > len(line):
            # empty declaration, e.g. tset(1) accepts a bare `-`
            LOGGER.debug(f"Skipping empty option declaration: {line!r}")
            continue

        if pending:
            definition = table.lookup(pending[-1])
            if definition is not None and definition.keyword in "".join(description):
                if definition.value not in resolved:
                    LOGGER.debug(f"Matched {definition.flag} ({definition.keyword!r})")
                    matched.append(definition)
                    resolved.add(definition.value)
                pending.pop()

        # `.It Fl r Ar seconds` declares `r`, the rest is its argument
        space = line.find(" ", start + 1)
        pending.append(line[start:space] if space != -1 else line[start:])
        description.clear()

    return matched


def check_options(
    utility: str,
    table: OptionTable,
    source: ManualSource,
    sections: Iterable[str] = DEFAULT_SECTIONS,
) -> list[OptionDefinition]:
    """Extract the testable options of `utility` from all its available manual sections."""
    lines: list[str] = []
    for section in sections:
        text = source.read(utility, section)
        if text is None:
            LOGGER.debug(f"No manual page for {utility}({section})")
            continue
        lines.extend(text.splitlines())
    return extract_options(lines, table)


class ChildProcess(NamedTuple):
    pid: int
    stream: IO[bytes]
    process: subprocess.Popen[bytes]


class Completed(NamedTuple):
    command: str
    output: str
    status: int
    pid: int
    timed_out: bool


class SpawnFailure(NamedTuple):
    command: str
    error: OSError


class WaitError(NamedTuple):
    command: str
    error: OSError
    pid: int


ExecutionResult = Union[Completed, SpawnFailure, WaitError]


def _terminate(process: subprocess.Popen[bytes]) -> None:
    """Signal the child's process group and reap the child."""
    try:
        os.killpg(process.pid, signal.SIGTERM)
        # a child stopped by a terminal read only acts on SIGTERM once continued
        os.killpg(process.pid, signal.SIGCONT)
    except ProcessLookupError:
        LOGGER.debug(f"Process group {process.pid} already gone")
    try:
        process.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        LOGGER.warning(f"Process group {process.pid} ignored SIGTERM, killing it")
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
        process.wait()


@contextlib.contextmanager
def spawn(
    command: str, direction: Literal["r", "w"] = "r", shell: str = DEFAULT_SHELL
) -> Generator[ChildProcess, None, None]:
    """
    Run `command` through `shell` in its own process group.

    The yielded stream is connected to the child's stdout ("r") or stdin ("w").
    Leaving the context terminates the process group, closes the stream and reaps
    the child, whichever way the block exits.

    Raises:
        ValueError: For an unknown direction.
        OSError: If the pipe or the child could not be created.
    """
    if direction not in ("r", "w"):
        raise ValueError(f"Expected direction 'r' or 'w', got {direction!r}")

    process = subprocess.Popen(
        [shell, "-c", command],
        stdin=subprocess.PIPE if direction == "w" else None,
        stdout=subprocess.PIPE if direction == "r" else None,
        close_fds=True,
        process_group=0,
    )
    stream: IO[bytes] = (
        process.stdout if direction == "r" else process.stdin  # type: ignore[assignment]
    )
    try:
        yield ChildProcess(pid=process.pid, stream=stream, process=process)
    finally:
        _terminate(process)
        with contextlib.suppress(BrokenPipeError):
            stream.close()


def _exit_status(returncode: int) -> int:
    # report signal deaths the way a shell does, e.g. 143 for SIGTERM
    if returncode < 0:
        return 128 - returncode
    return returncode


def execute(
    command: str, timeout: float = TIMEOUT, shell: str = DEFAULT_SHELL
) -> ExecutionResult:
    """
    Execute `command` in a shell and capture its standard output.

    The child gets `timeout` seconds to start producing output. Once output is
    available it is read until end of stream. A child that produced nothing in time,
    e.g. one blocked reading a terminal, is terminated with whatever it wrote.
    The child never outlives this call.
    """
    if timeout < 0:
        raise ValueError(f"Expected a non-negative timeout, got {timeout}")
    with contextlib.ExitStack() as stack:
        try:
            child = stack.enter_context(spawn(command, "r", shell=shell))
        except OSError as error:
            LOGGER.error(f"Unable to execute `{command}`: {error}")
            return SpawnFailure(command, error)

        try:
            ready, _, _ = select.select([child.stream], [], [], timeout)
        except OSError as error:
            LOGGER.error(f"Waiting on `{command}` failed: {error}")
            return WaitError(command, error, child.pid)

        if ready:
            output = child.stream.read()
        else:
            LOGGER.debug(f"`{command}` produced no output in {timeout}s, terminating")
            output = b""

    return Completed(
        command=command,
        output=output.decode(errors="replace"),
        status=_exit_status(child.process.returncode),
        pid=child.pid,
        timed_out=not ready,
    )


class Settings(NamedTuple):
    manual_dir: pathlib.Path = pathlib.Path("groff")
    sections: tuple[str, ...] = DEFAULT_SECTIONS
    timeout: float = TIMEOUT
    shell: str = DEFAULT_SHELL


DEFAULT_SETTINGS: Final[Settings] = Settings()


_CONFIG_KEYS: Final[Mapping[str, str]] = {
    "manual-dir": "manual_dir",
    "sections": "sections",
    "timeout": "timeout",
    "shell": "shell",
}


def _convert(key: str, value: Any) -> Any:
    if key == "manual-dir" and isinstance(value, str):
        return pathlib.Path(value)
    if key == "shell" and isinstance(value, str):
        return value
    if key == "sections" and isinstance(value, list):
        if all(isinstance(section, (str, int)) for section in value):
            return tuple(str(section) for section in value)
    if key == "timeout" and isinstance(value, (int, float)) and not isinstance(value, bool):
        if value >= 0:
            return float(value)
    raise TypeError(f"Invalid optcheck configuration {key}: {value!r}")


def get_config(source: pathlib.Path) -> Settings:
    """
    Load the `tool.optcheck` settings from the pyproject.toml in `source`.
    A relative `manual-dir` is resolved against `source`.
    """
    local_toml = source / "pyproject.toml"
    cfg_result: dict[str, Any] = {}
    if local_toml.exists():
        toml = tomlkit.parse(local_toml.read_text())
        config = toml.get("tool", {}).get("optcheck")
        if config:
            for arg, value in config.unwrap().items():
                if arg in _CONFIG_KEYS:
                    cfg_result[_CONFIG_KEYS[arg]] = _convert(arg, value)
                else:
                    warnings.warn(f"Unknown optcheck configuration: {arg}", stacklevel=2)
    settings = Settings(**cfg_result)
    if not settings.manual_dir.is_absolute():
        settings = settings._replace(manual_dir=source / settings.manual_dir)
    LOGGER.debug(f"Loaded {settings}")
    return settings


class ExecutionEnvironmentError(RuntimeError):
    """The process machinery itself failed, no further utility can be checked."""


class OptionCheck(NamedTuple):
    utility: str
    definition: OptionDefinition
    result: ExecutionResult
    passed: bool

    def __str__(self) -> str:
        outcome = "PASS" if self.passed else "FAIL"
        if isinstance(self.result, Completed):
            detail = f"status {self.result.status}"
            if self.result.timed_out:
                detail += ", timed out"
        else:
            detail = f"spawn failed: {self.result.error}"
        return f"{outcome} {self.utility} {self.definition.flag} ({detail})"


def build_command(utility: str, definition: OptionDefinition) -> str:
    # usage text usually goes to stderr
    return f"{utility} {definition.flag} 2>&1"


def check_utility(
    utility: str,
    table: OptionTable,
    source: ManualSource,
    settings: Settings = DEFAULT_SETTINGS,
) -> list[OptionCheck]:
    """
    Run `utility` with each testable option its manual documents and check that
    the option's keyword shows up in the output.

    Raises:
        ExecutionEnvironmentError: If waiting on a child failed.
    """
    checks: list[OptionCheck] = []
    for definition in check_options(utility, table, source, settings.sections):
        command = build_command(utility, definition)
        result = execute(command, timeout=settings.timeout, shell=settings.shell)
        if isinstance(result, WaitError):
            raise ExecutionEnvironmentError(
                f"Waiting on `{result.command}` failed: {result.error}"
            )
        passed = isinstance(result, Completed) and definition.keyword in result.output
        LOGGER.info(f"{utility} {definition.flag}: {'passed' if passed else 'failed'}")
        checks.append(OptionCheck(utility, definition, result, passed))
    return checks


ATF_CASE_TEMPLATE: Final[str] = """atf_test_case {name}
{name}_head()
{{
	atf_set "descr" "Verify the usage of option '{value}'"
}}

{name}_body()
{{
	atf_check -s exit:{status} -o {output} sh -c {command}
}}

"""


def render_atf_script(checks: Iterable[OptionCheck]) -> str | None:
    """
    Render an ATF test script that pins down what each checked option printed.

    Only runs that completed in time are recorded, timed out or unspawnable runs
    have no reliable output. Returns ``None`` when nothing is left to record.
    """
    cases: list[str] = []
    body = io.StringIO()
    for check in checks:
        result = check.result
        if not isinstance(result, Completed) or result.timed_out:
            LOGGER.debug(f"Not recording {check.utility} {check.definition.flag}")
            continue
        name = f"{check.definition.value}_flag"
        body.write(
            ATF_CASE_TEMPLATE.format(
                name=name,
                value=check.definition.value,
                status=result.status,
                output=shlex.quote(f"inline:{result.output}"),
                command=shlex.quote(result.command),
            )
        )
        cases.append(name)
    if not cases:
        return None
    body.write("atf_init_test_cases()\n{\n")
    for name in cases:
        body.write(f"\tatf_add_test_case {name}\n")
    body.write("}\n")
    return body.getvalue()


def write_atf_script(
    utility: str, checks: Iterable[OptionCheck], directory: pathlib.Path
) -> pathlib.Path | None:
    """Write `render_atf_script` output to ``<directory>/<utility>_test.sh``."""
    script = render_atf_script(checks)
    if script is None:
        return None
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{utility}_test.sh"
    path.write_text(script)
    LOGGER.info(f"Wrote {path}")
    return path


def _non_negative_float(value: str) -> float:
    seconds = float(value)
    if seconds < 0:
        raise ArgumentTypeError(f"expected a non-negative number of seconds, got {value}")
    return seconds


def _get_cli_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="optcheck",
        description="Check that documented options of a utility behave as its manual says.",
    )
    parser.add_argument(
        "utilities",
        nargs="+",
        metavar="UTILITY",
        help="The utilities to check.",
    )
    parser.add_argument(
        "--source",
        type=pathlib.Path,
        default=".",
        help="The directory holding the pyproject.toml to read settings from. Default: .",
        required=False,
    )
    parser.add_argument(
        "--manual-dir",
        type=pathlib.Path,
        help="The directory of `<utility>.<section>` manual pages. Default: groff",
    )
    parser.add_argument(
        "--timeout",
        type=_non_negative_float,
        help=f"Seconds to wait for a utility's output. Default: {TIMEOUT}",
    )
    parser.add_argument(
        "--emit-atf",
        type=pathlib.Path,
        metavar="DIR",
        help="Write an ATF test script per utility recording the observed output to DIR.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


PARSER: Final[ArgumentParser] = _get_cli_parser()


def main(argv: Sequence[str] | None = None) -> int:
    args = PARSER.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    settings = get_config(args.source)
    if args.manual_dir is not None:
        settings = settings._replace(manual_dir=args.manual_dir)
    if args.timeout is not None:
        settings = settings._replace(timeout=args.timeout)

    table = OptionTable.default()
    source = DirectoryManualSource(settings.manual_dir)
    failed = False
    try:
        for utility in args.utilities:
            checks = check_utility(utility, table, source, settings)
            if not checks:
                print(f"{utility}: no testable options")
            for check in checks:
                print(check)
                failed = failed or not check.passed
            if args.emit_atf is not None:
                write_atf_script(utility, checks, args.emit_atf)
    except ExecutionEnvironmentError as error:
        print(f"optcheck: {error}", file=sys.stderr)
        return 2
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
