#!/usr/bin/env python3

# =============================================================================
# Code Assistant
# Ask questions about local source files and apply the full-file
# replacements the model proposes, keeping a .orig backup of each file.
# =============================================================================

#------------------------------------------------------------------------------
# 1. IMPORTS (Organized by category)
# -----------------------------------------------------------------------------

# Standard library imports
import argparse
import difflib
import os
import re
import sys
from enum import Enum
from textwrap import dedent
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Third-party imports
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict
from dotenv import load_dotenv

# Rich console imports
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.panel import Panel

# Prompt toolkit imports
from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style as PromptStyle

# -----------------------------------------------------------------------------
# 2. CONFIGURATION CONSTANTS
# -----------------------------------------------------------------------------

# Model configuration
DEFAULT_MODEL: str = "claude-3-7-sonnet-20250219"
DEFAULT_BASE_URL: str = "https://api.anthropic.com/v1/"
MAX_RESPONSE_TOKENS: int = 4000

# Environment variables
API_KEY_ENV: str = "ANTHROPIC_API_KEY"
BASE_URL_ENV: str = "ANTHROPIC_BASE_URL"
MODEL_ENV: str = "CODE_ASSISTANT_MODEL"

# File operation settings
BACKUP_SUFFIX: str = ".orig"
BINARY_PEEK_SIZE: int = 1024

# Interactive loop
QUESTION_PROMPT: str = 'Ask a question about the code (or type "exit" to quit): '
EXIT_COMMANDS: Tuple[str, ...] = ("exit", "/exit", "/quit")
CONFIRM_ANSWERS: Tuple[str, ...] = ("y", "yes")

# -----------------------------------------------------------------------------
# 3. GLOBAL STATE MANAGEMENT
# -----------------------------------------------------------------------------

# Rich console shared by every output helper
console = Console()

def create_prompt_session() -> PromptSession:
    """Create the styled prompt_toolkit session used for terminal input."""
    return PromptSession(
        style=PromptStyle.from_dict({
            'prompt': '#0066ff bold',
        })
    )

# -----------------------------------------------------------------------------
# 4. TYPE DEFINITIONS & PYDANTIC MODELS
# -----------------------------------------------------------------------------

class LoadError(Exception):
    """Raised when one of the files named on the command line cannot be loaded."""

class Settings(BaseModel):
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    max_tokens: int = MAX_RESPONSE_TOKENS

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after load_dotenv)."""
        return cls(
            api_key=os.getenv(API_KEY_ENV) or None,
            base_url=os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL,
            model=os.getenv(MODEL_ENV) or DEFAULT_MODEL,
        )

class TrackedFile(BaseModel):
    """A file loaded at startup. The content is a snapshot and is never refreshed."""
    model_config = ConfigDict(frozen=True)

    identity: str
    original_path: str
    content: str
    extension: str

class ProposedChange(BaseModel):
    label: str
    path: str
    new_content: str

class ChangeStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    READ_ERROR = "read_error"
    BACKUP_ERROR = "backup_error"
    WRITE_ERROR = "write_error"

class ChangeResult(BaseModel):
    path: str
    status: ChangeStatus
    backup_path: Optional[str] = None
    error: Optional[str] = None

# Instructions appended to every question
FILE_FORMAT_INSTRUCTIONS: str = dedent("""
    When suggesting file changes, please:
    1. Always provide the COMPLETE file contents (not just the changed parts)
    2. Format each file replacement using markdown code blocks with the filename as a level 2 heading
    3. Use this exact format for any file you want to modify:

    ## filename.ext

    ```filetype
    // Complete file content here, including all unchanged parts
    ```

    This format is essential as it will be used to automatically update the files.
""")

# -----------------------------------------------------------------------------
# 5. FILE LOADING & PROMPT BUILDING
# -----------------------------------------------------------------------------

def read_local_file(file_path: str) -> str:
    """
    Read content from a local file.

    Line endings are returned untranslated so that what is written back
    matches what was read.

    Args:
        file_path: Path to the file to read

    Returns:
        File content as string

    Raises:
        FileNotFoundError: If file doesn't exist
        UnicodeDecodeError: If file can't be decoded as UTF-8
    """
    with open(file_path, "r", encoding="utf-8", newline="") as f:
        return f.read()

def write_local_file(file_path: str, content: str, must_exist: bool = False) -> None:
    """
    Write content to a local file and force it to disk before returning.

    Args:
        file_path: Path to the file to write
        content: Exact text to write
        must_exist: Refuse to create the file if it is missing

    Raises:
        OSError: If the file can't be opened, written or synced
    """
    mode = "r+" if must_exist else "w"
    with open(file_path, mode, encoding="utf-8", newline="") as f:
        if must_exist:
            f.truncate(0)
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

def is_binary_file(file_path: str, peek_size: int = BINARY_PEEK_SIZE) -> bool:
    """
    Check if a file is binary by looking for null bytes.

    Args:
        file_path: Path to the file to check
        peek_size: Number of bytes to check

    Returns:
        True if file appears to be binary
    """
    try:
        with open(file_path, 'rb') as f:
            chunk = f.read(peek_size)
        return b'\0' in chunk
    except OSError:
        return True

def load_tracked_file(file_path: str, cwd: Optional[str] = None) -> TrackedFile:
    """
    Load one file named on the command line.

    Args:
        file_path: Path exactly as the user supplied it
        cwd: Directory identities are made relative to (defaults to os.getcwd())

    Returns:
        The loaded TrackedFile

    Raises:
        LoadError: If the file is missing, unreadable, not UTF-8 or binary
    """
    cwd = cwd or os.getcwd()
    full_path = os.path.join(cwd, file_path)
    try:
        content = read_local_file(full_path)
    except (OSError, UnicodeDecodeError) as e:
        raise LoadError(f"Error reading file {file_path}: {e}") from e
    if is_binary_file(full_path):
        raise LoadError(f"Error reading file {file_path}: binary files are not supported")

    absolute_path = os.path.abspath(full_path)
    try:
        identity = os.path.relpath(absolute_path, cwd)
    except ValueError:
        # Different drive on Windows
        identity = absolute_path

    return TrackedFile(
        identity=identity,
        original_path=file_path,
        content=content,
        extension=os.path.splitext(file_path)[1][1:],
    )

def load_tracked_files(file_paths: List[str], cwd: Optional[str] = None) -> List[TrackedFile]:
    """Load every path in order. The first failure aborts the whole load."""
    files: List[TrackedFile] = []
    for file_path in file_paths:
        files.append(load_tracked_file(file_path, cwd))
        console.print(f"[bold blue]✓[/bold blue] Loaded: '[bright_cyan]{escape(file_path)}[/bright_cyan]'")
    return files

def build_preprompt(files: List[TrackedFile]) -> str:
    """Render the loaded files in the same heading + fence layout the model must answer with."""
    preprompt = "# Code Files\n\n"
    for tracked in files:
        preprompt += f"## {tracked.identity}\n\n"
        preprompt += f"```{tracked.extension}\n{tracked.content}\n```\n\n"
    return preprompt

def build_prompt(preprompt: str, question: str) -> str:
    return f"{preprompt}\n\nQuestion: {question}\n\n{FILE_FORMAT_INSTRUCTIONS}"

# -----------------------------------------------------------------------------
# 6. PROPOSED CHANGE EXTRACTION
# -----------------------------------------------------------------------------

HEADING_PATTERN = re.compile(r"^## (.+?)\s*$")
OPENING_FENCE_PATTERN = re.compile(r"^\s*```[\w+#.-]*\s*$")
CLOSING_FENCE_PATTERN = re.compile(r"^\s*```\s*$")

def _opening_fence_after(lines: List[str], heading_index: int) -> Optional[int]:
    """Return the index of the opening fence that follows a heading, skipping blank lines."""
    index = heading_index + 1
    while index < len(lines) and not lines[index].strip():
        index += 1
    if index < len(lines) and OPENING_FENCE_PATTERN.match(lines[index]):
        return index
    return None

def _interrupts_file_block(lines: List[str], index: int) -> bool:
    """True if a heading inside an open block is followed by a tagged opening fence.

    A bare fence after the heading is the open block's own closing fence.
    """
    if not HEADING_PATTERN.match(lines[index]):
        return False
    fence_index = _opening_fence_after(lines, index)
    return fence_index is not None and not CLOSING_FENCE_PATTERN.match(lines[fence_index])

def scan_file_blocks(text: str) -> Iterator[Tuple[str, str]]:
    """
    Yield every (label, content) pair found in a model reply, top to bottom.

    A block is a ``## label`` line, optional blank lines, an opening fence
    (with an optional language tag), the content lines and a closing fence
    line. The content keeps every line terminator and is empty for an empty
    block.

    A fence that never closes, or that is interrupted by the start of another
    heading + fence block, yields nothing; scanning resumes at the point where
    it gave up so later blocks are still found.

    Args:
        text: The full model reply

    Yields:
        Tuples of (trimmed heading text, exact fenced content)
    """
    lines = text.split("\n")
    index = 0
    while index < len(lines):
        heading = HEADING_PATTERN.match(lines[index])
        fence_index = _opening_fence_after(lines, index) if heading else None
        if heading is None or fence_index is None:
            index += 1
            continue

        end = fence_index + 1
        while end < len(lines):
            if CLOSING_FENCE_PATTERN.match(lines[end]) or _interrupts_file_block(lines, end):
                break
            end += 1

        if end < len(lines) and CLOSING_FENCE_PATTERN.match(lines[end]):
            content = "".join(line + "\n" for line in lines[fence_index + 1:end])
            yield heading.group(1).strip(), content
            index = end + 1
        else:
            # Unterminated: resume at the interrupting heading (or stop at the end of text)
            index = end

def resolve_label(label: str, files: List[TrackedFile]) -> Optional[TrackedFile]:
    """Return the tracked file whose identity or original path equals the label exactly."""
    for tracked in files:
        if label == tracked.identity or label == tracked.original_path:
            return tracked
    return None

def detect_file_changes(response: str, files: List[TrackedFile]) -> List[ProposedChange]:
    """
    Parse a model reply into the proposed replacements for loaded files.

    Labels that do not name a loaded file are dropped. When the same file is
    proposed more than once the last block wins, keeping the position of the
    first one.

    Args:
        response: The full model reply
        files: Files loaded this session

    Returns:
        Proposed changes in order of first appearance
    """
    proposed: Dict[str, ProposedChange] = {}
    for label, new_content in scan_file_blocks(response):
        tracked = resolve_label(label, files)
        if tracked is None:
            continue
        # Reassigning an existing key keeps its insertion position
        proposed[tracked.identity] = ProposedChange(
            label=label,
            path=tracked.original_path,
            new_content=new_content,
        )
    return list(proposed.values())

# -----------------------------------------------------------------------------
# 7. APPLYING CHANGES
# -----------------------------------------------------------------------------

def backup_path_for(file_path: str) -> str:
    return f"{file_path}{BACKUP_SUFFIX}"

def apply_file_change(change: ProposedChange) -> ChangeResult:
    """
    Apply one proposed change: back up the current content, then overwrite.

    Nothing is written when the current content equals the new content once
    surrounding whitespace is ignored. The target is never touched unless
    the backup was written successfully.

    Args:
        change: The change to apply

    Returns:
        The outcome of the change
    """
    path = change.path
    try:
        current_content = read_local_file(path)
    except (OSError, UnicodeDecodeError) as e:
        return ChangeResult(path=path, status=ChangeStatus.READ_ERROR, error=str(e))

    if current_content.strip() == change.new_content.strip():
        return ChangeResult(path=path, status=ChangeStatus.UNCHANGED)

    backup_path = backup_path_for(path)
    try:
        write_local_file(backup_path, current_content)
    except OSError as e:
        return ChangeResult(path=path, status=ChangeStatus.BACKUP_ERROR, error=str(e))

    try:
        write_local_file(path, change.new_content, must_exist=True)
    except OSError as e:
        return ChangeResult(path=path, status=ChangeStatus.WRITE_ERROR, backup_path=backup_path, error=str(e))

    return ChangeResult(path=path, status=ChangeStatus.APPLIED, backup_path=backup_path)

def report_change_result(result: ChangeResult) -> None:
    path = escape(result.path)
    if result.status == ChangeStatus.APPLIED:
        console.print(
            f"[bold blue]✓[/bold blue] Updated file: '[bright_cyan]{path}[/bright_cyan]' "
            f"(original backed up to '[bright_cyan]{escape(result.backup_path or '')}[/bright_cyan]')"
        )
    elif result.status == ChangeStatus.UNCHANGED:
        console.print(f"[dim]No changes detected for file: {path}[/dim]")
    else:
        console.print(f"[bold red]✗[/bold red] Error saving changes to '[bright_cyan]{path}[/bright_cyan]': {escape(result.error or '')}")
        if result.status == ChangeStatus.WRITE_ERROR:
            console.print(f"[yellow]⚠ The original content is still available in '{escape(result.backup_path or '')}'.[/yellow]")

def save_file_changes(changes: List[ProposedChange]) -> List[ChangeResult]:
    """Apply changes one file at a time. A failure on one file never stops the others."""
    results: List[ChangeResult] = []
    for change in changes:
        result = apply_file_change(change)
        report_change_result(result)
        results.append(result)
    return results

def _count_line_changes(old: str, new: str) -> Tuple[int, int]:
    added = removed = 0
    diff = difflib.unified_diff(old.splitlines(), new.splitlines(), lineterm="")
    for line in diff:
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed

def show_changes_table(changes: List[ProposedChange]) -> None:
    """
    Display a table of the proposed file replacements.

    Args:
        changes: Proposed changes to summarise
    """
    if not changes:
        return
    table = Table(title="📝 Proposed Changes", show_header=True, header_style="bold bright_blue", border_style="blue")
    table.add_column("File Path", style="bright_cyan", no_wrap=True)
    table.add_column("Added", style="bright_green", justify="right")
    table.add_column("Removed", style="red", justify="right")
    for change in changes:
        try:
            added, removed = _count_line_changes(read_local_file(change.path), change.new_content)
            table.add_row(escape(change.path), f"+{added}", f"-{removed}")
        except (OSError, UnicodeDecodeError):
            table.add_row(escape(change.path), "?", "?")
    console.print(table)

# -----------------------------------------------------------------------------
# 8. SESSION CONTEXT & MODEL CALLS
# -----------------------------------------------------------------------------

class AssistantContext:
    """
    Everything a turn needs: settings, loaded files, API client and terminal input.

    Created once at startup and closed exactly once, normally through ``with``.
    """

    def __init__(
        self,
        settings: Settings,
        files: List[TrackedFile],
        client: Optional[Any] = None,
        prompt_session: Optional[Any] = None,
    ) -> None:
        self.settings = settings
        self.files = files
        self.preprompt = build_preprompt(files)
        # The session can fail without a terminal; create it before the client that needs closing
        self.prompt_session = prompt_session if prompt_session is not None else create_prompt_session()
        self.client = client if client is not None else OpenAI(api_key=settings.api_key, base_url=settings.base_url)
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.client.close()

    def __enter__(self) -> "AssistantContext":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

def ask_model(ctx: AssistantContext, question: str) -> str:
    """
    Send the files and the question to the model and stream the reply to the terminal.

    Args:
        ctx: The session context
        question: The user's question

    Returns:
        The full text of the reply

    Raises:
        OpenAIError: If the API call fails
    """
    prompt = build_prompt(ctx.preprompt, question)
    with console.status("[bold yellow]Generating response...[/bold yellow]", spinner="dots"):
        response_stream = ctx.client.chat.completions.create(
            model=ctx.settings.model,
            max_tokens=ctx.settings.max_tokens,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
        )

    full_response_content = ""
    console.print("[bold bright_magenta]🤖 Assistant:[/bold bright_magenta]")
    for chunk in response_stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta.content:
            console.print(delta.content, end="", style="bright_magenta", markup=False, highlight=False)
            full_response_content += delta.content
    console.print("\n")
    return full_response_content

def confirm_changes(ctx: AssistantContext, changes: List[ProposedChange]) -> bool:
    answer = ctx.prompt_session.prompt(f"{len(changes)} file change(s) detected. Apply these changes? (y/n): ")
    return answer.strip().lower() in CONFIRM_ANSWERS

def handle_question(ctx: AssistantContext, question: str) -> Optional[List[ChangeResult]]:
    """
    Run one question/answer turn.

    Returns:
        None if the model call failed, otherwise the results of the applied
        changes (empty when nothing was proposed or the user declined)
    """
    try:
        response = ask_model(ctx, question)
    except OpenAIError as e:
        console.print(f"[bold red]✗[/bold red] Error generating response: {escape(str(e))}")
        return None

    changes = detect_file_changes(response, ctx.files)
    if not changes:
        return []

    show_changes_table(changes)
    if not confirm_changes(ctx, changes):
        console.print("[yellow]File changes not applied.[/yellow]")
        return []
    return save_file_changes(changes)

# -----------------------------------------------------------------------------
# 9. COMMAND HANDLERS
# -----------------------------------------------------------------------------

def is_exit_command(user_input: str) -> bool:
    return user_input.strip().lower() in EXIT_COMMANDS

def try_handle_help_command(user_input: str) -> bool:
    """Handle /help command to show available commands."""
    if user_input.strip().lower() == "/help":
        help_table = Table(title="📝 Available Commands", show_header=True, header_style="bold bright_blue")
        help_table.add_column("Command", style="bright_cyan")
        help_table.add_column("Description", style="white")
        help_table.add_row("/help", "Show this help")
        help_table.add_row("/files", "List the files loaded for this session")
        help_table.add_row("exit, /exit, /quit", "Exit application")
        console.print(help_table)
        console.print(f"[dim]Proposed changes are only applied to loaded files; originals are kept as *{BACKUP_SUFFIX}.[/dim]")
        return True
    return False

def try_handle_files_command(ctx: AssistantContext, user_input: str) -> bool:
    """Handle /files command to list the loaded files."""
    if user_input.strip().lower() == "/files":
        files_table = Table(title="📁 Loaded Files", show_header=True, header_style="bold bright_blue")
        files_table.add_column("Path", style="bright_cyan")
        files_table.add_column("Type", style="white")
        files_table.add_column("Lines", style="white", justify="right")
        for tracked in ctx.files:
            files_table.add_row(escape(tracked.identity), tracked.extension or "-", str(len(tracked.content.splitlines())))
        console.print(files_table)
        return True
    return False

# -----------------------------------------------------------------------------
# 10. MAIN LOOP & ENTRY POINT
# -----------------------------------------------------------------------------

def main_loop(ctx: AssistantContext) -> None:
    """Ask questions until the user exits."""
    while True:
        try:
            console.print()
            user_input = ctx.prompt_session.prompt(QUESTION_PROMPT).strip()

            if is_exit_command(user_input):
                console.print("[bold blue]👋 Goodbye![/bold blue]")
                return

            if not user_input:
                console.print('[yellow]Please ask a question or type "exit" to quit.[/yellow]')
                continue

            if try_handle_help_command(user_input): continue
            if try_handle_files_command(ctx, user_input): continue

            handle_question(ctx, user_input)

        except KeyboardInterrupt:
            console.print("\n[yellow]⚠ Interrupted. Ctrl+D or exit to quit.[/yellow]")
        except EOFError:
            console.print("[blue]👋 Goodbye! (EOF)[/blue]")
            return
        except Exception:
            console.print("\n[red]✗ Unexpected error in main loop:[/red]")
            console.print_exception(width=None, extra_lines=1)

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="code-assistant",
        description="Ask questions about source files and apply the changes the model proposes.",
    )
    parser.add_argument("files", nargs="+", metavar="FILE", help="files to load into the session")
    return parser

def main(argv: Optional[List[str]] = None) -> None:
    """Application entry point."""
    args = build_arg_parser().parse_args(argv)

    load_dotenv()
    settings = Settings.from_env()
    if not settings.api_key:
        console.print(f"[bold red]✗ Error:[/bold red] {API_KEY_ENV} environment variable is not set")
        sys.exit(1)

    console.print(f"Reading {len(args.files)} file(s)...")
    try:
        files = load_tracked_files(args.files)
    except LoadError as e:
        console.print(f"[bold red]✗[/bold red] {escape(str(e))}")
        sys.exit(1)

    console.print(Panel.fit(
        "[bold bright_blue]🚀 Code Assistant[/bold bright_blue]\n"
        f"[dim]Model: {escape(settings.model)} · {len(files)} file(s) loaded[/dim]\n"
        "[dim]Type /help for commands. Ctrl+C to interrupt, Ctrl+D or exit to quit.[/dim]",
        border_style="bright_blue"
    ))

    with AssistantContext(settings, files) as ctx:
        main_loop(ctx)

if __name__ == "__main__":
    main()
