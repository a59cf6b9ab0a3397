"""
Unix process pipelines from a single command string.

Usage:
    from procs import Process, build, run

    # Simple command
    result = run("ls -la")
    print(result.output)

    # Pipes are parsed from the string, just like a shell
    result = run("ls -la | grep .py | wc -l")

    # Transform every output line before it is buffered
    result = Process("git log --oneline", output_handler=str.upper).run()

    # Start now, wait later
    proc = build("make test", cwd="/src/project", env={"PATH": "/usr/bin"})
    proc.start()
    ...
    if proc.wait() == 0:
        print(proc.output())

Output of the last stage (stdout and stderr alike) is buffered line by
line with the newlines removed. Lines that do not end in a newline when
the stream closes are dropped.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import IO, Callable, Mapping, Optional, Sequence, Union

__version__ = "0.1.0"

__all__ = [
    "Process",
    "build",
    "run",
    "split_command",
    "build_stages",
    "expand",
    "Token",
    "WORD",
    "PIPE",
    "StageSpec",
    "Inherit",
    "Override",
    "EnvPolicy",
    "State",
    "Completion",
    "Result",
    "PipelineError",
    "ParseError",
    "LaunchError",
    "CommandError",
    "__version__",
]

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str], str]


@dataclass
class Result:
    """Result of a pipeline execution."""
    output: str
    returncode: int
    returncodes: Optional[list] = None  # Every stage, in pipeline order
    errors: str = ""  # stderr of all but the last stage

    @property
    def ok(self) -> bool:
        """True if the last stage exited with code 0."""
        return self.returncode == 0

    def __bool__(self) -> bool:
        return self.ok

    def __str__(self) -> str:
        return self.output

    def raise_on_error(self) -> "Result":
        """Raise an exception if the pipeline failed."""
        if not self.ok:
            raise CommandError(self)
        return self


class PipelineError(Exception):
    """Base class for all errors raised by procs."""


class ParseError(PipelineError, ValueError):
    """Raised when a command string cannot be turned into stages."""
    def __init__(self, message: str, command: Optional[str] = None, position: Optional[int] = None):
        self.command = command
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        if command is not None:
            message = f"{message}: {command!r}"
        super().__init__(message)


class LaunchError(PipelineError):
    """Raised when a stage fails to start."""
    def __init__(self, index: int, argv: list, reason: str = "", stderr: str = ""):
        self.index = index
        self.argv = argv
        self.reason = reason
        self.stderr = stderr
        message = f"Stage {index} failed to start: {argv}"
        if reason:
            message += f"\nreason: {reason}"
        if stderr:
            message += f"\nstderr: {stderr}"
        super().__init__(message)


class CommandError(PipelineError):
    """Raised when the last stage exits with a non-zero code."""
    def __init__(self, result: Result):
        self.result = result
        super().__init__(
            f"Command failed with code {result.returncode}\n"
            f"output: {result.output}"
        )


# Lexing

WORD = "word"
PIPE = "pipe"

_WHITESPACE = " \t\r\n"


@dataclass(frozen=True)
class Token:
    """A word (quotes and escapes removed) or a pipe separator."""
    kind: str
    value: str

    @property
    def is_pipe(self) -> bool:
        return self.kind == PIPE


def split_command(text: str) -> list[Token]:
    """
    Split a command string into word and pipe tokens.

    Whitespace separates words outside quotes. Single quotes keep their
    content verbatim; inside double quotes a backslash only escapes ``"``
    and ``\\``. Outside quotes a backslash escapes any character. An
    unquoted ``|`` is always a pipe token of its own, even when it is
    glued to a word as in ``echo hi|wc -l``.

    Args:
        text: The raw command string.

    Returns:
        Tokens in source order.

    Raises:
        ParseError: On an unterminated quote or a trailing backslash.
    """
    tokens: list[Token] = []
    word: list[str] = []
    in_word = False  # True once a word has started, even if it is ""
    pos = 0

    def finish_word():
        nonlocal word, in_word
        if in_word:
            tokens.append(Token(WORD, "".join(word)))
        word, in_word = [], False

    while pos < len(text):
        char = text[pos]

        if char in _WHITESPACE:
            finish_word()
            pos += 1
        elif char == "|":
            finish_word()
            tokens.append(Token(PIPE, "|"))
            pos += 1
        elif char == "\\":
            if pos + 1 >= len(text):
                raise ParseError("Trailing backslash", text, pos)
            word.append(text[pos + 1])
            in_word = True
            pos += 2
        elif char == "'":
            end = text.find("'", pos + 1)
            if end < 0:
                raise ParseError("Unterminated single quote", text, pos)
            word.append(text[pos + 1:end])
            in_word = True
            pos = end + 1
        elif char == '"':
            pos = _read_double_quoted(text, pos, word)
            in_word = True
        else:
            word.append(char)
            in_word = True
            pos += 1

    finish_word()
    return tokens


def _read_double_quoted(text: str, start: int, word: list[str]) -> int:
    """Append the body of the quote opened at ``start``; return the index after it."""
    pos = start + 1
    while pos < len(text):
        char = text[pos]
        if char == '"':
            return pos + 1
        if char == "\\" and text[pos + 1:pos + 2] in ('"', "\\"):
            word.append(text[pos + 1])
            pos += 2
        else:
            word.append(char)
            pos += 1
    raise ParseError("Unterminated double quote", text, start)


# Environment

# A bare positional name is a single digit: "$1abc" is "$1" then "abc".
_VARIABLE = re.compile(r"\$(?:\{([A-Za-z0-9_]+)\}|([A-Za-z_][A-Za-z0-9_]*|[0-9]))")


@dataclass(frozen=True)
class Inherit:
    """Expand variables from, and run stages in, the ambient environment."""

    def lookup(self, name: str) -> str:
        return os.environ.get(name, "")

    def environ(self) -> Optional[dict]:
        return None


@dataclass(frozen=True)
class Override:
    """
    Expand variables from ``mapping`` only, and run stages with exactly
    that environment.

    The ambient environment is never consulted, not even for names the
    mapping lacks: those expand to an empty string. Values of the mapping
    may reference each other (``{"A": "x", "B": "$A/y"}``).
    """
    mapping: Mapping[str, str] = field(default_factory=dict)

    def lookup(self, name: str) -> str:
        return self.mapping.get(name, "")

    def environ(self) -> dict:
        return {key: expand(value, self) for key, value in self.mapping.items()}


EnvPolicy = Union[Inherit, Override]


def expand(text: str, env: EnvPolicy) -> str:
    """Replace ``$NAME`` and ``${NAME}`` in ``text`` using ``env``."""
    return _VARIABLE.sub(lambda m: env.lookup(m.group(1) or m.group(2)), text)


def _env_policy(env) -> EnvPolicy:
    if env is None:
        return Inherit()
    if isinstance(env, (Inherit, Override)):
        return env
    if isinstance(env, Mapping):
        return Override(dict(env))
    raise TypeError(f"env must be a mapping, Inherit or Override, not {type(env).__name__}")


# Stages

@dataclass(frozen=True)
class StageSpec:
    """One sub-process of a pipeline, fully resolved."""
    executable: str
    args: tuple = ()
    cwd: Optional[str] = None
    env: Optional[dict] = None  # None inherits the ambient environment

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


def build_stages(
    tokens: Sequence[Token],
    cwd: Optional[str] = None,
    env: Optional[EnvPolicy] = None,
) -> list[StageSpec]:
    """
    Group tokens into one StageSpec per pipe segment.

    Every word is expanded with ``env`` (default: ``Inherit()``). The stage
    environment is only materialised for ``Override``.

    Raises:
        ParseError: If there are no words at all, or a pipe is leading,
                    trailing or doubled.
    """
    env = env if env is not None else Inherit()
    cwd = cwd or os.getcwd()
    stage_env = env.environ()

    groups: list[list[str]] = [[]]
    for token in tokens:
        if token.is_pipe:
            groups.append([])
        else:
            groups[-1].append(expand(token.value, env))

    if len(groups) == 1 and not groups[0]:
        raise ParseError("Empty command")

    stages = []
    for index, words in enumerate(groups):
        if not words:
            raise ParseError(f"Empty stage {index} (leading, trailing or doubled pipe)")
        stages.append(StageSpec(words[0], tuple(words[1:]), cwd, stage_env))
    return stages


def _find_executable(name: str) -> Optional[str]:
    """Look up a bare program name on the caller's PATH, whatever the stage env."""
    if not name or os.path.dirname(name):
        return None
    return shutil.which(name)


def _reap(proc: subprocess.Popen) -> None:
    # Drop our end of its stdout first so it cannot block writing to it.
    if proc.stdout is not None:
        proc.stdout.close()
    proc.wait()


class State(enum.Enum):
    """Lifecycle of a Process."""
    UNBUILT = "unbuilt"
    BUILT = "built"
    LAUNCHED = "launched"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


class Completion:
    """
    Completion of a running pipeline: both output drains of the last stage
    plus the exit of the last stage, behind a single handle.
    """

    def __init__(self, process: subprocess.Popen, drains: list[threading.Thread]):
        self._process = process
        self._drains = drains

    def done(self) -> bool:
        """True once both drains have finished and the last stage has exited."""
        if any(drain.is_alive() for drain in self._drains):
            return False
        return self._process.poll() is not None

    def wait(self) -> int:
        """Block until done, return the last stage's return code."""
        for drain in self._drains:
            drain.join()
        return self._process.wait()


class Process:
    """
    A pipeline of processes built from a command string or a list of stages.

    Examples:
        Process("echo hello | tr a-z A-Z").run().output   # "HELLO"
        Process(stages=[["ls"], ["wc", "-l"]]).run()
        Process("echo $NAME", env={"NAME": "world"}).run()
    """

    def __init__(
        self,
        command: Optional[str] = None,
        *,
        stages: Optional[Sequence[Union[StageSpec, Sequence[str]]]] = None,
        cwd: Optional[Union[str, os.PathLike]] = None,
        env: Optional[Union[Mapping[str, str], EnvPolicy]] = None,
        output_handler: Optional[OutputHandler] = None,
    ):
        """
        Create an unbuilt pipeline.

        Args:
            command: Command string, parsed with shell-like quoting and
                     split on ``|``.
            stages: Pre-built stages instead of a command string. Each is a
                    StageSpec (used as is) or an argv list (no expansion).
            cwd: Working directory of every stage. Defaults to the current
                 directory at build time.
            env: None to inherit the ambient environment, or a mapping that
                 replaces it, both for ``$VAR`` expansion and for the stages.
            output_handler: Called with every output line (without its
                            newline); its return value is buffered instead.
        """
        if (command is None) == (stages is None):
            raise ValueError("Pass exactly one of command or stages")

        self._command = command
        self._stage_input = list(stages) if stages is not None else None
        self._cwd = os.fspath(cwd) if cwd is not None else None
        self._env = _env_policy(env)
        self._output_handler = output_handler

        self._state = State.UNBUILT
        self._stages: list[StageSpec] = []
        self._processes: list[subprocess.Popen] = []
        self._completion: Optional[Completion] = None
        self._returncode: Optional[int] = None

        self._lines: list[str] = []
        self._lines_lock = threading.Lock()
        self._handler_error: Optional[Exception] = None
        self._errors = bytearray()
        self._error_collector: Optional[threading.Thread] = None

    def build(self) -> "Process":
        """Resolve the stages. Does nothing if already built."""
        if self._state is not State.UNBUILT:
            return self

        cwd = self._cwd or os.getcwd()
        if self._command is not None:
            tokens = split_command(self._command)
            try:
                self._stages = build_stages(tokens, cwd=cwd, env=self._env)
            except ParseError as e:
                raise ParseError(str(e), self._command) from None
        else:
            stage_env = self._env.environ()
            self._stages = [self._coerce_stage(s, cwd, stage_env) for s in self._stage_input]
            if not self._stages:
                raise ParseError("Empty stage list")

        self._state = State.BUILT
        return self

    @staticmethod
    def _coerce_stage(stage, cwd: str, env: Optional[dict]) -> StageSpec:
        if isinstance(stage, StageSpec):
            return stage
        if isinstance(stage, str):
            raise TypeError(f"Stage must be a StageSpec or an argv list, not a string: {stage!r}")
        argv = [os.fspath(arg) for arg in stage]
        if not argv:
            raise ParseError("Empty stage in stage list")
        return StageSpec(argv[0], tuple(argv[1:]), cwd, env)

    def run(self, check: bool = False) -> Result:
        """
        Start the pipeline and block until it has finished.

        Args:
            check: If True, raise CommandError on a non-zero exit of the
                   last stage.

        Returns:
            Result with the buffered output and return codes.

        Raises:
            ParseError: If the command string is malformed.
            LaunchError: If a stage could not be started.
        """
        self.start()
        self.wait()
        result = self.result()
        if check and not result.ok:
            raise CommandError(result)
        return result

    def start(self) -> None:
        """
        Build if needed and launch every stage without waiting for them.

        Raises:
            ParseError: If the command string is malformed.
            LaunchError: If a stage could not be started. Stages started
                         before it have been reaped when this is raised.
            RuntimeError: If the pipeline was already started.
        """
        self.build()
        if self._state is not State.BUILT:
            raise RuntimeError(f"Cannot start a pipeline that is {self._state.value}")
        self._launch()
        self._state = State.LAUNCHED

    def _launch(self) -> None:
        last = len(self._stages) - 1
        err_write = self._open_error_pipe() if last > 0 else None
        failure = None

        with contextlib.ExitStack() as cleanup:
            if err_write is not None:
                cleanup.callback(os.close, err_write)

            with contextlib.ExitStack() as reapers:
                for index, stage in enumerate(self._stages):
                    try:
                        proc = self._start_stage(stage, index == last, err_write)
                    except (OSError, ValueError, subprocess.SubprocessError) as e:
                        failure = (index, stage, e)
                        break
                    reapers.callback(_reap, proc)
                    self._processes.append(proc)
                else:
                    reapers.pop_all()

        if failure is not None:
            index, stage, error = failure
            self._state = State.FAILED
            self._join_error_collector()
            stderr = self.errors
            logger.warning("Stage %d failed to start: %s: %s", index, stage.argv, error)
            if stderr:
                logger.warning("stderr of earlier stages:\n%s", stderr)
            raise LaunchError(index, stage.argv, str(error), stderr) from error

        terminal = self._processes[-1]
        drains = [
            threading.Thread(target=self._drain, args=(stream,), name=f"procs-{name}", daemon=True)
            for name, stream in (("stdout", terminal.stdout), ("stderr", terminal.stderr))
        ]
        for drain in drains:
            drain.start()
        self._completion = Completion(terminal, drains)

    def _start_stage(self, stage: StageSpec, is_last: bool, err_write: Optional[int]) -> subprocess.Popen:
        stdin = self._processes[-1].stdout if self._processes else None
        logger.debug("Starting stage %d: %s", len(self._processes), stage.argv)

        proc = subprocess.Popen(
            stage.argv,
            executable=_find_executable(stage.executable),
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE if is_last else err_write,
            cwd=stage.cwd,
            env=stage.env,
        )

        # The new stage owns the previous stdout now; SIGPIPE only reaches
        # upstream once our copy is closed.
        if stdin is not None:
            stdin.close()
        return proc

    def _open_error_pipe(self) -> int:
        """Start collecting stderr of the non-terminal stages, return the write end."""
        read_fd, write_fd = os.pipe()
        self._error_collector = threading.Thread(
            target=self._collect_errors, args=(read_fd,), name="procs-errors", daemon=True
        )
        self._error_collector.start()
        return write_fd

    def _collect_errors(self, fd: int) -> None:
        with open(fd, "rb") as stream:
            try:
                for chunk in iter(lambda: stream.read1(1024), b""):
                    self._errors += chunk
            except OSError as e:
                logger.debug("Stopped collecting stage stderr: %s", e)

    def _join_error_collector(self) -> None:
        if self._error_collector is not None:
            self._error_collector.join()

    def _drain(self, stream: IO[bytes]) -> None:
        """Read ``stream`` to EOF, buffering every complete line."""
        pending = bytearray()
        with stream:
            while True:
                try:
                    chunk = stream.read1(1024)
                except (OSError, ValueError) as e:
                    logger.debug("Stopped reading output: %s", e)
                    return
                if not chunk:
                    return

                # Only the new chunk can hold a newline not seen yet.
                scanned = len(pending)
                pending += chunk
                start = 0
                end = pending.find(b"\n", scanned)
                while end >= 0:
                    self._append_line(pending[start:end].decode("utf-8", errors="replace"))
                    start = end + 1
                    end = pending.find(b"\n", start)
                del pending[:start]

    def _append_line(self, line: str) -> None:
        if self._output_handler is not None:
            if self._handler_error is not None:
                return  # Keep draining, but stop calling a broken handler
            try:
                line = self._output_handler(line)
            except Exception as e:
                logger.debug("Output handler raised on %r: %s", line, e)
                with self._lines_lock:
                    if self._handler_error is None:
                        self._handler_error = e
                return
            if not isinstance(line, str):
                with self._lines_lock:
                    if self._handler_error is None:
                        self._handler_error = TypeError(
                            f"output_handler must return str, not {type(line).__name__}"
                        )
                return

        with self._lines_lock:
            self._lines.append(line)

    def wait(self, check: bool = False) -> int:
        """
        Block until both output streams are drained and every stage has exited.

        Args:
            check: If True, raise CommandError on a non-zero exit of the
                   last stage.

        Returns:
            Return code of the last stage.

        Raises:
            RuntimeError: If the pipeline was never started, or failed to.
            Exception: Whatever the output handler raised first, if it did.
        """
        if self._state is not State.COMPLETED:
            if self._state not in (State.LAUNCHED, State.DRAINING):
                raise RuntimeError(f"Cannot wait on a pipeline that is {self._state.value}")

            self._state = State.DRAINING
            self._returncode = self._completion.wait()
            for proc in self._processes[:-1]:
                proc.wait()
            self._join_error_collector()
            self._state = State.COMPLETED
            logger.debug("Pipeline finished, return codes %s", self.returncodes)

        if self._handler_error is not None:
            raise self._handler_error
        if check and self._returncode != 0:
            raise CommandError(self.result())
        return self._returncode

    def poll(self) -> Optional[int]:
        """Return the last stage's return code if everything has finished, else None."""
        if self._state is State.COMPLETED:
            return self._returncode
        if self._completion is None or not self._completion.done():
            return None

        self._returncode = self._processes[-1].returncode
        collecting = self._error_collector is not None and self._error_collector.is_alive()
        if not collecting and all(proc.poll() is not None for proc in self._processes[:-1]):
            self._state = State.COMPLETED
        return self._returncode

    def output(self) -> str:
        """Buffered output of the last stage. Complete only after wait()."""
        with self._lines_lock:
            return "".join(self._lines)

    def result(self) -> Result:
        """Snapshot of output and return codes. Complete only after wait()."""
        return Result(
            output=self.output(),
            returncode=self._returncode,
            returncodes=self.returncodes,
            errors=self.errors,
        )

    @property
    def state(self) -> State:
        return self._state

    @property
    def completion(self) -> Optional[Completion]:
        """Composite completion handle, available once started."""
        return self._completion

    @property
    def stages(self) -> list[StageSpec]:
        return list(self._stages)

    @property
    def returncode(self) -> Optional[int]:
        """Return code of the last stage, None until wait() returns."""
        return self._returncode

    @property
    def returncodes(self) -> list[Optional[int]]:
        """Return codes of the started stages (None if still running)."""
        return [proc.returncode for proc in self._processes]

    @property
    def errors(self) -> str:
        """stderr collected from every stage but the last."""
        return bytes(self._errors).decode("utf-8", errors="replace")

    def _copy(self, **changes) -> "Process":
        config = {
            "stages": self._stage_input,
            "cwd": self._cwd,
            "env": self._env,
            "output_handler": self._output_handler,
        }
        config.update(changes)
        return Process(self._command, **config)

    def with_env(self, env: Optional[Union[Mapping[str, str], EnvPolicy]]) -> "Process":
        """Return a new unbuilt Process with a different environment policy."""
        return self._copy(env=env)

    def with_cwd(self, cwd: Union[str, os.PathLike]) -> "Process":
        """Return a new unbuilt Process running in a different directory."""
        return self._copy(cwd=cwd)

    def with_output_handler(self, handler: Optional[OutputHandler]) -> "Process":
        """Return a new unbuilt Process with a different output handler."""
        return self._copy(output_handler=handler)

    def __repr__(self) -> str:
        if self._command is not None:
            return f"Process({self._command!r}, state={self._state.value!r})"
        stages = " | ".join(repr(list(s.argv) if isinstance(s, StageSpec) else list(s))
                            for s in self._stage_input)
        return f"Process(stages={stages}, state={self._state.value!r})"


def build(
    command: Optional[str] = None,
    *,
    stages: Optional[Sequence[Union[StageSpec, Sequence[str]]]] = None,
    **options,
) -> Process:
    """
    Create a Process and resolve its stages.

    Usage:
        proc = build("cat access.log | grep 404", cwd="/var/log")
        print(proc.stages)
    """
    return Process(command, stages=stages, **options).build()


def run(command: str, check: bool = False, **options) -> Result:
    """
    Convenience function to run a command string directly.

    Usage:
        result = run("ls -la | wc -l")
        result = run("echo $USER", env={"USER": "me"}, check=True)
    """
    return Process(command, **options).run(check=check)
