#!/usr/bin/env python3
"""Freewrite: a distraction-free journal for the terminal."""

from __future__ import annotations

import asyncio
import json
import os
import random
import re
import time
import uuid
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime
from difflib import SequenceMatcher
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import platformdirs
from loguru import logger
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout.containers import (
    DynamicContainer, Float, FloatContainer, HSplit, VSplit, Window, WindowAlign,
)
from prompt_toolkit.layout.controls import BufferControl, FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension as D
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import DynamicStyle
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import Button, Dialog, Label, TextArea

APP_NAME = "freewrite"
DEFAULT_DIR_NAME = "Freewrite"

# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════

TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"
HEADER = "\n\n"
PREVIEW_LENGTH = 30


class FilenameParseError(ValueError):
    """Filename does not follow the ``[<id>]-[<timestamp>].md`` convention."""


class StorageError(Exception):
    """A filesystem operation failed in a way the user should hear about."""


@dataclass(frozen=True)
class EntryName:
    """Identity of an entry as encoded in its filename."""
    id: uuid.UUID
    created_at: datetime

    @property
    def filename(self) -> str:
        return encode_filename(self.id, self.created_at)


@dataclass
class Entry:
    """One journaling session, backed by a single file."""
    id: uuid.UUID
    created_at: datetime
    filename: str
    preview_text: str = ""

    @classmethod
    def from_name(cls, name: EntryName, preview_text: str = "",
                  filename: Optional[str] = None) -> Entry:
        """Build an entry; ``filename`` is the name found on disk, if any."""
        return cls(id=name.id, created_at=name.created_at,
                   filename=filename or name.filename, preview_text=preview_text)

    @property
    def display_date(self) -> str:
        return f"{self.created_at:%b} {self.created_at.day}"


# ════════════════════════════════════════════════════════════════════════
#  Filename Codec
# ════════════════════════════════════════════════════════════════════════

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def encode_filename(entry_id: uuid.UUID, created_at: datetime) -> str:
    """Build ``[<ID>]-[<yyyy-MM-dd-HH-mm-ss>].md``.

    Ids are written upper-case, the form existing Freewrite folders hold.
    """
    return f"[{str(entry_id).upper()}]-[{created_at.strftime(TIMESTAMP_FORMAT)}].md"


def decode_filename(filename: str) -> EntryName:
    """Parse an entry filename, raising FilenameParseError on any mismatch."""
    base = filename.removesuffix(".md")
    parts = base.split("]-[")
    if len(parts) != 2:
        raise FilenameParseError(f"Expected one ']-[' separator: {filename!r}")
    id_part = parts[0].removeprefix("[")
    date_part = parts[1].removesuffix("]")
    if not id_part or not date_part:
        raise FilenameParseError(f"Empty segment: {filename!r}")
    if not _UUID_RE.match(id_part):
        raise FilenameParseError(f"Invalid id {id_part!r} in {filename!r}")
    try:
        created_at = datetime.strptime(date_part, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise FilenameParseError(
            f"Invalid timestamp {date_part!r} in {filename!r}") from exc
    return EntryName(id=uuid.UUID(id_part), created_at=created_at)


# ════════════════════════════════════════════════════════════════════════
#  Text Normalization & Zen Lines
# ════════════════════════════════════════════════════════════════════════


def normalize_leading_newlines(text: str) -> str:
    """Give non-empty text exactly the two-newline top padding.

    Text that is blank collapses to the padding alone. Text already carrying
    two or more leading newlines is left untouched.
    """
    if not text.strip():
        return HEADER
    if text.startswith("\n\n"):
        return text
    if text.startswith("\n"):
        return "\n" + text
    return HEADER + text


def make_preview(content: str) -> str:
    preview = content.replace("\n", " ").strip()
    if len(preview) > PREVIEW_LENGTH:
        return preview[:PREVIEW_LENGTH] + "..."
    return preview


@dataclass
class ZenLines:
    """A buffer decomposed for line-at-a-time writing."""
    previous_lines: list[str] = field(default_factory=list)
    current_line: str = ""

    @property
    def flat(self) -> str:
        return "\n".join(self.previous_lines + [self.current_line])

    def submit(self) -> None:
        """Commit the current line (unless blank) and start a new one."""
        if self.current_line.strip():
            self.previous_lines.append(self.current_line)
        self.current_line = ""


def split_lines(buffer: str) -> ZenLines:
    """Split a flat buffer into (previous lines, current line).

    The last non-blank line becomes the current line. A blank buffer keeps
    only its leading run of empty lines as padding.
    """
    lines = buffer.split("\n")
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].strip():
            return ZenLines(previous_lines=lines[:i], current_line=lines[i])
    leading = []
    for line in lines:
        if line:
            break
        leading.append(line)
    return ZenLines(previous_lines=leading, current_line="")


def join_lines(previous_lines: list[str], current_line: str) -> str:
    final_lines = list(previous_lines)
    if current_line.strip():
        final_lines.append(current_line)
    return normalize_leading_newlines("\n".join(final_lines))


# ════════════════════════════════════════════════════════════════════════
#  Settings
# ════════════════════════════════════════════════════════════════════════

THEMES = ("light", "dark")


def settings_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME)) / "settings.json"


def atomic_write(path: Path, content: str) -> None:
    """Write via a hidden temp file in the same directory, then rename."""
    temp_path = path.parent / f".{path.name}.tmp.{os.getpid()}"
    try:
        with open(temp_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


@dataclass
class Settings:
    """Persisted preferences: the override directory and the theme."""
    path: Path
    custom_directory: Optional[str] = None
    theme: str = "light"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Settings:
        settings = cls(path=path or settings_path())
        if not settings.path.exists():
            return settings
        try:
            data = json.loads(settings.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable settings {}: {}", settings.path, exc)
            return settings
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed settings {}", settings.path)
            return settings
        custom = data.get("custom_directory")
        if isinstance(custom, str) and custom:
            settings.custom_directory = custom
        if data.get("theme") in THEMES:
            settings.theme = data["theme"]
        return settings

    def save(self) -> None:
        data = {"custom_directory": self.custom_directory, "theme": self.theme}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(self.path, json.dumps(data, indent=4))
        except OSError as exc:
            logger.error("Failed to save settings {}: {}", self.path, exc)


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════

LOAD_ERROR_TEXT = "\n\nError: Could not access storage location."


def default_directory() -> Path:
    if os.environ.get("FREEWRITE_HOME"):
        return Path(os.environ["FREEWRITE_HOME"]).expanduser()
    return Path(platformdirs.user_documents_dir()) / DEFAULT_DIR_NAME


def resolve_directory(settings: Settings) -> Path:
    """Return the entry folder, healing a stale override.

    An override that is missing or not a directory is cleared from the
    settings and the default folder is used instead.
    """
    if settings.custom_directory:
        custom = Path(settings.custom_directory).expanduser()
        if custom.is_dir():
            return custom
        logger.warning("Custom directory {} is not a directory, "
                       "resetting to default", settings.custom_directory)
        settings.custom_directory = None
        settings.save()
    directory = default_directory()
    if not directory.is_dir():
        try:
            directory.mkdir(parents=True, exist_ok=True)
            logger.info("Created default directory {}", directory)
        except OSError as exc:
            logger.error("Failed to create default directory {}: {}", directory, exc)
    return directory


class EntryStore:
    def __init__(self, directory: Path):
        self.directory = directory

    def entry_path(self, entry: Entry) -> Path:
        return self.directory / entry.filename

    def _read_preview(self, path: Path) -> str:
        try:
            return make_preview(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            return ""

    def list_entries(self) -> list[Entry]:
        """Parse entry files, most recent first. Other files are skipped."""
        try:
            paths = sorted(
                p for p in self.directory.iterdir()
                if not p.name.startswith(".") and not p.is_dir())
        except OSError as exc:
            logger.warning("Failed to list {}: {}", self.directory, exc)
            return []
        entries = []
        for p in paths:
            try:
                name = decode_filename(p.name)
            except FilenameParseError as exc:
                logger.debug("Skipping {}: {}", p.name, exc)
                continue
            entries.append(Entry.from_name(name, self._read_preview(p), filename=p.name))
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def create_entry(self, seed: str = "") -> Entry:
        name = EntryName(id=uuid.uuid4(),
                         created_at=datetime.now().replace(microsecond=0))
        entry = Entry.from_name(name)
        content = normalize_leading_newlines(seed)
        try:
            atomic_write(self.entry_path(entry), content)
        except OSError as exc:
            logger.error("Failed to create entry {}: {}", entry.filename, exc)
            raise StorageError(f"Could not create entry: {exc.strerror or exc}") from exc
        entry.preview_text = make_preview(content)
        logger.info("Created entry {}", entry.filename)
        return entry

    def save_entry(self, entry: Entry, content: str) -> str:
        """Overwrite the entry and return its refreshed preview.

        A failed write is logged and leaves the previous file in place.
        """
        text = normalize_leading_newlines(content)
        try:
            atomic_write(self.entry_path(entry), text)
        except OSError as exc:
            logger.error("Failed to save entry {}: {}", entry.filename, exc)
            return entry.preview_text
        entry.preview_text = make_preview(text)
        logger.debug("Saved entry {}", entry.filename)
        return entry.preview_text

    def read_entry(self, entry: Entry) -> str:
        try:
            content = self.entry_path(entry).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Failed to load entry {}: {}", entry.filename, exc)
            raise StorageError(f"Could not read entry {entry.filename}") from exc
        return normalize_leading_newlines(content)

    def load_entry(self, entry: Entry) -> str:
        """Like read_entry, but an unreadable file gives the placeholder text."""
        try:
            return self.read_entry(entry)
        except StorageError:
            return LOAD_ERROR_TEXT

    def delete_entry(self, entry: Entry) -> None:
        try:
            self.entry_path(entry).unlink()
        except FileNotFoundError:
            logger.info("Entry {} was already removed", entry.filename)
            return
        except OSError as exc:
            logger.error("Failed to delete entry {}: {}", entry.filename, exc)
            raise StorageError(f"Could not delete entry: {exc.strerror or exc}") from exc
        logger.info("Deleted entry {}", entry.filename)


# ════════════════════════════════════════════════════════════════════════
#  Writing Timer
# ════════════════════════════════════════════════════════════════════════

DEFAULT_TIMER_SECONDS = 900
MAX_TIMER_SECONDS = 45 * 60
TIMER_STEP_MINUTES = 5


@dataclass
class WritingTimer:
    remaining: int = DEFAULT_TIMER_SECONDS
    running: bool = False

    @property
    def formatted(self) -> str:
        minutes, seconds = divmod(self.remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"

    @property
    def is_default(self) -> bool:
        return not self.running and self.remaining == DEFAULT_TIMER_SECONDS

    def toggle(self) -> None:
        if not self.running and self.remaining == 0:
            self.remaining = DEFAULT_TIMER_SECONDS
        self.running = not self.running

    def reset(self) -> None:
        self.running = False
        self.remaining = DEFAULT_TIMER_SECONDS

    def adjust(self, minutes: int) -> None:
        """Change the duration while stopped, clamped to 0..45 minutes."""
        if self.running:
            return
        self.remaining = max(0, min(MAX_TIMER_SECONDS, self.remaining + minutes * 60))

    def tick(self) -> bool:
        """Count down one second. True exactly when the timer runs out."""
        if not self.running:
            return False
        if self.remaining > 0:
            self.remaining -= 1
        if self.remaining == 0:
            self.running = False
            return True
        return False


# ════════════════════════════════════════════════════════════════════════
#  Share
# ════════════════════════════════════════════════════════════════════════

AI_CHAT_PROMPT = (
    "You are an AI assistant. The user has provided the following text. "
    "Please analyze it and provide helpful feedback, suggestions, or insights. "
    "Focus on clarity, flow, and potential areas for expansion or refinement.")
CLAUDE_PROMPT = (
    "Analyze the following text and provide constructive feedback. "
    "Consider the writing style, clarity, potential improvements, and "
    "interesting themes or ideas present.")

CHAT_SERVICES = {
    "chatgpt": ("https://chat.openai.com/?m=", AI_CHAT_PROMPT),
    "claude": ("https://claude.ai/new?q=", CLAUDE_PROMPT),
}
MAX_CHAT_URL_LENGTH = 8000


def chat_url(service: str, text: str) -> str:
    try:
        base, prompt = CHAT_SERVICES[service]
    except KeyError:
        raise ValueError(f"Unknown chat service: {service!r}") from None
    return base + quote(prompt + "\n\n" + text.strip(), safe="")


def open_in_chat(service: str, text: str) -> bool:
    """Open the entry in a chat assistant. False if it is too long for a URL."""
    url = chat_url(service, text)
    if len(url) > MAX_CHAT_URL_LENGTH:
        logger.info("Entry too long to share with {} ({} chars)", service, len(url))
        return False
    webbrowser.open(url)
    return True


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════

WELCOME_TEXT = """Welcome to Freewrite.

This is a place to write without stopping. Don't edit, don't reread, don't \
delete. Just keep typing whatever comes to mind until the timer runs out.

A few keys to know:

  ^t  start or pause the 15 minute timer
  ^e  Zen Mode, one line at a time (Esc to leave)
  ^n  new entry
  ^o  history of past entries
  ^p  every other command

Everything saves itself. Start whenever you're ready.
"""

PLACEHOLDERS = [
    "Begin writing",
    "Pick a thought and go",
    "Start typing",
    "What's on your mind",
    "Just start",
    "Type your first thought",
    "Start with one sentence",
    "Just say it",
]


class AppState:
    """Mutable application state shared across the UI."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store: Optional[EntryStore] = None
        self.entries: list[Entry] = []
        self.current_entry: Optional[Entry] = None
        self.text = ""
        self.dirty = False
        # Set while the current entry's file could not be read; it is never
        # overwritten in that state.
        self.load_failed = False
        self.zen: Optional[ZenLines] = None
        self.timer = WritingTimer()
        self.placeholder = random.choice(PLACEHOLDERS)
        self.show_history = False
        self.notification = ""
        self.notification_task = None
        self.quit_pending = 0.0
        self.root_container = None
        self.tick_task = None
        self.load_entries()

    # -- Entries --

    def load_entries(self) -> None:
        """(Re)read the entry folder and open the most recent entry."""
        self.save_current()
        self.current_entry = None
        self.store = EntryStore(resolve_directory(self.settings))
        self.entries = self.store.list_entries()
        if self.entries:
            self.select(self.entries[0])
            return
        try:
            self.new_entry()
        except StorageError as exc:
            self.text = LOAD_ERROR_TEXT
            self.notification = str(exc)

    def current_text(self) -> str:
        if self.zen is not None:
            return join_lines(self.zen.previous_lines, self.zen.current_line)
        return self.text

    def update_text(self, text: str) -> None:
        self.text = text
        self.dirty = True

    def save_current(self) -> None:
        """Write pending edits. Unchanged and unreadable entries are left alone."""
        if self.current_entry is not None and self.dirty:
            if self.load_failed:
                logger.warning("Not saving {}: its file could not be read",
                               self.current_entry.filename)
            else:
                self.store.save_entry(self.current_entry, self.current_text())
        self.dirty = False

    def select(self, entry: Entry) -> None:
        self.save_current()
        self.current_entry = entry
        self.dirty = False
        try:
            self.text = self.store.read_entry(entry)
            self.load_failed = False
        except StorageError as exc:
            self.text = LOAD_ERROR_TEXT
            self.load_failed = True
            self.notification = str(exc)

    def new_entry(self) -> Entry:
        """Create and select a fresh entry; the very first one gets a welcome."""
        self.save_current()
        seed = "" if self.entries else WELCOME_TEXT
        entry = self.store.create_entry(seed)
        self.entries.insert(0, entry)
        self.current_entry = entry
        self.text = normalize_leading_newlines(seed)
        self.dirty = False
        self.load_failed = False
        self.placeholder = random.choice(PLACEHOLDERS)
        return entry

    def delete_entry(self, entry: Entry) -> None:
        self.store.delete_entry(entry)
        self.entries = [e for e in self.entries if e.id != entry.id]
        if self.current_entry is not None and self.current_entry.id == entry.id:
            self.current_entry = None
            self.dirty = False
            if self.entries:
                self.select(self.entries[0])
            else:
                self.new_entry()

    def find_entry(self, entry_id: str) -> Optional[Entry]:
        for e in self.entries:
            if str(e.id) == entry_id:
                return e
        return None

    # -- Directory --

    def change_directory(self, path: str) -> bool:
        directory = Path(path).expanduser()
        if not directory.is_dir():
            return False
        self.save_current()
        self.settings.custom_directory = str(directory)
        self.settings.save()
        logger.info("Custom directory selected: {}", directory)
        self.load_entries()
        return True

    def reset_directory(self) -> None:
        self.save_current()
        self.settings.custom_directory = None
        self.settings.save()
        logger.info("Reset to default directory")
        self.load_entries()

    # -- Zen Mode --

    def enter_zen(self) -> None:
        if self.zen is not None:
            return
        self.show_history = False
        self.zen = split_lines(self.text)
        self.text = self.zen.flat

    def exit_zen(self) -> None:
        if self.zen is None:
            return
        zen, self.zen = self.zen, None
        joined = join_lines(zen.previous_lines, zen.current_line)
        if joined != self.text:
            self.dirty = True
        self.text = joined
        self.save_current()

    # -- Misc --

    def toggle_theme(self) -> None:
        self.settings.theme = "dark" if self.settings.theme == "light" else "light"
        self.settings.save()

    def tick(self) -> bool:
        """One-second heartbeat: autosave when dirty, run the timer.

        Returns True when the timer just ran out (Zen Mode is left then).
        """
        if self.dirty:
            self.save_current()
        expired = self.timer.tick()
        if expired:
            self.exit_zen()
        return expired


# ════════════════════════════════════════════════════════════════════════
#  Helpers
# ════════════════════════════════════════════════════════════════════════


def show_notification(state, message, duration=3.0):
    """Show a notification in the status bar, auto-clearing after duration."""
    state.notification = message
    get_app().invalidate()
    if state.notification_task:
        state.notification_task.cancel()

    async def _clear():
        await asyncio.sleep(duration)
        if state.notification == message:
            state.notification = ""
            get_app().invalidate()

    state.notification_task = asyncio.ensure_future(_clear())


async def show_dialog_as_float(state, dialog):
    """Show a modal dialog as a float and await its result."""
    float_ = Float(content=dialog, transparent=False)
    state.root_container.floats.append(float_)
    app = get_app()
    focused_before = app.layout.current_window
    app.layout.focus(dialog)
    result = await dialog.future
    if float_ in state.root_container.floats:
        state.root_container.floats.remove(float_)
    try:
        app.layout.focus(focused_before)
    except ValueError:
        pass
    app.invalidate()
    return result


def _word_count(text):
    return len(text.split())


def configure_logging() -> Path:
    """Send loguru output to a rotating file; stderr belongs to the UI.

    The level comes from FREEWRITE_LOG_LEVEL (default INFO).
    """
    log_dir = Path(platformdirs.user_log_dir(APP_NAME))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "freewrite.log"
    level = os.environ.get("FREEWRITE_LOG_LEVEL", "INFO").upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        level = "INFO"
    logger.remove()
    logger.add(log_file, level=level, rotation="1 MB", retention=3)
    return log_file


# ════════════════════════════════════════════════════════════════════════
#  SelectableList Widget
# ════════════════════════════════════════════════════════════════════════


class SelectableList:
    """Navigable list widget. Items are (id, label) pairs."""

    def __init__(self, on_select=None):
        self.items = []
        self.selected_index = 0
        self.on_select = on_select
        self._kb = KeyBindings()
        sl = self

        @self._kb.add("up")
        def _up(event):
            if sl.selected_index > 0:
                sl.selected_index -= 1

        @self._kb.add("down")
        def _down(event):
            if sl.selected_index < len(sl.items) - 1:
                sl.selected_index += 1

        @self._kb.add("enter")
        def _enter(event):
            if sl.items and sl.on_select:
                sl.on_select(sl.items[sl.selected_index][0])

        self.control = FormattedTextControl(
            self._get_text, focusable=True, key_bindings=self._kb,
        )
        self.window = Window(
            content=self.control, style="class:select-list", wrap_lines=False,
        )

    def _get_text(self):
        if not self.items:
            return [("class:select-list.empty", "  (empty)\n")]
        result = []
        for i, (_, label) in enumerate(self.items):
            if i == self.selected_index:
                result.append(("[SetCursorPosition]", ""))
                result.append(("class:select-list.selected", f"  {label}\n"))
            else:
                result.append(("", f"  {label}\n"))
        return result

    def set_items(self, items):
        self.items = items
        if self.selected_index >= len(items):
            self.selected_index = max(0, len(items) - 1)

    def __pt_container__(self):
        return self.window


# ════════════════════════════════════════════════════════════════════════
#  Dialogs
# ════════════════════════════════════════════════════════════════════════


class _ModalDialog:
    """Base for float dialogs that resolve a future exactly once."""

    cancel_result = None

    def __init__(self):
        self.future = asyncio.Future()

    def _finish(self, result):
        if not self.future.done():
            self.future.set_result(result)

    def cancel(self):
        self._finish(self.cancel_result)

    def __pt_container__(self):
        return self.dialog


class FolderDialog(_ModalDialog):
    """Asks for a folder path; resolves to the stripped path or None."""

    def __init__(self, initial=""):
        super().__init__()
        self.path_area = TextArea(text=initial, multiline=False,
                                  width=D(preferred=60))
        self.path_area.buffer.cursor_position = len(initial)

        def choose(_buf=None):
            self._finish(self.path_area.text.strip() or None)

        self.path_area.buffer.accept_handler = choose
        self.dialog = Dialog(
            title="Choose Freewrite Folder",
            body=HSplit([Label(text="Folder path:"), self.path_area]),
            buttons=[Button(text="Choose", handler=choose),
                     Button(text="Cancel", handler=self.cancel)],
            modal=True,
        )


class ConfirmDialog(_ModalDialog):
    """Yes/No question answered with y/n or the buttons."""

    cancel_result = False

    def __init__(self, question):
        super().__init__()
        kb = KeyBindings()
        kb.add("y")(lambda event: self._finish(True))
        kb.add("n")(lambda event: self._finish(False))
        control = FormattedTextControl([("", f"\n  {question}\n")],
                                       focusable=True, key_bindings=kb)
        self.dialog = Dialog(
            title="Confirm",
            body=Window(content=control, height=3),
            buttons=[Button(text="(y) Yes", handler=lambda: self._finish(True)),
                     Button(text="(n) No", handler=lambda: self._finish(False))],
            modal=True,
            width=D(preferred=50),
        )


def rank_commands(commands, query):
    """Filter (name, key, action) commands by query, best match first.

    Substring hits rank above fuzzy ones; fuzzy matches below 30% drop out.
    """
    if not query:
        return list(commands)
    q = query.lower()
    scored = []
    for cmd in commands:
        name = cmd[0].lower()
        score = 100.0 if q in name else SequenceMatcher(None, q, name).ratio() * 100
        if score > 30:
            scored.append((score, cmd))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [cmd for _, cmd in scored]


class CommandPaletteDialog(_ModalDialog):
    """Searchable command list; resolves to the chosen action or None."""

    def __init__(self, commands):
        super().__init__()
        self.all_commands = commands
        self.filtered = list(commands)
        self.search_buf = Buffer(multiline=False)
        self.search_buf.on_text_changed += lambda buf: self._refresh(buf.text)
        self.results = SelectableList(on_select=lambda i: self._run(int(i)))

        search_kb = KeyBindings()
        search_kb.add("escape", eager=True)(lambda event: self.cancel())
        self.results._kb.add("escape", eager=True)(lambda event: self.cancel())

        @search_kb.add("down")
        def _down(event):
            event.app.layout.focus(self.results.window)

        @search_kb.add("enter")
        def _enter(event):
            self._run(self.results.selected_index)

        search_window = Window(
            content=BufferControl(buffer=self.search_buf, key_bindings=search_kb),
            height=1, style="class:input",
        )
        self._refresh("")
        self.dialog = Dialog(
            title="Commands",
            body=HSplit([search_window, self.results], padding=0),
            buttons=[Button(text="Cancel", handler=self.cancel)],
            modal=True,
            width=D(preferred=60, max=80),
        )

    def _refresh(self, query):
        self.filtered = rank_commands(self.all_commands, query)
        self.results.set_items([
            (str(i), f"{name}  ({key})")
            for i, (name, key, _) in enumerate(self.filtered)
        ])
        self.results.selected_index = 0

    def _run(self, index):
        if 0 <= index < len(self.filtered):
            self._finish(self.filtered[index][2])


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════

_STYLES = {
    "light": PtStyle.from_dict({
        "": "#333333 bg:#ffffff",
        "status": "#737373 bg:#fafafa",
        "hint": "#999999",
        "accent": "#333333 bold",
        "input": "bg:#f0f0f0 #333333",
        "editor": "",
        "zen": "#333333 bg:#ffffff",
        "zen.hint": "#aaaaaa",
        "history": "bg:#fafafa",
        "select-list": "",
        "select-list.selected": "bg:#e8e8e8",
        "select-list.empty": "#999999",
        "dialog": "#333333 bg:#ffffff",
        "dialog.body": "#333333 bg:#ffffff",
        "dialog text-area": "#333333 bg:#f0f0f0",
        "dialog frame.label": "#333333 bold",
        "dialog shadow": "bg:#cccccc",
        "button": "#333333 bg:#e0e0e0",
        "button.focused": "#333333 bg:#c8c8c8",
        "label": "#333333",
    }),
    "dark": PtStyle.from_dict({
        "": "#ebebed bg:#1f1f21",
        "status": "#b3b3b8 bg:#242426",
        "hint": "#777777",
        "accent": "#f2f299 bold",
        "input": "bg:#333333 #ebebed",
        "editor": "",
        "zen": "#e6e6e6 bg:#000000",
        "zen.hint": "#666666",
        "history": "bg:#242426",
        "select-list": "",
        "select-list.selected": "bg:#3a3a3c",
        "select-list.empty": "#777777",
        "dialog": "#ebebed bg:#2a2a2a",
        "dialog.body": "#ebebed bg:#2a2a2a",
        "dialog text-area": "#ebebed bg:#333333",
        "dialog frame.label": "#ebebed bold",
        "dialog shadow": "bg:#111111",
        "button": "#ebebed bg:#555555",
        "button.focused": "#ebebed bg:#777777",
        "label": "#ebebed",
    }),
}


def create_app(settings: Settings):
    """Build and return the prompt_toolkit Application."""
    state = AppState(settings)

    # ── Editor ───────────────────────────────────────────────────────

    editor_area = TextArea(
        text=state.text,
        multiline=True,
        wrap_lines=True,
        scrollbar=False,
        style="class:editor",
        focus_on_click=True,
    )

    def _on_editor_changed(buf):
        if state.zen is None and buf.text != state.text:
            state.update_text(buf.text)

    editor_area.buffer.on_text_changed += _on_editor_changed

    def sync_editor():
        """Push state.text into the editor, cursor at the end."""
        editor_area.text = state.text
        editor_area.buffer.cursor_position = len(state.text)

    def get_status_text():
        if state.notification:
            return [("class:status", f" {state.notification}")]
        parts = []
        if state.current_entry:
            parts.append(state.current_entry.display_date)
        text = state.current_text()
        if text.strip():
            parts.append(f"{_word_count(text)} words")
        else:
            parts.append(state.placeholder)
        timer_icon = "■" if state.timer.running else "▶"
        parts.append(f"{timer_icon} {state.timer.formatted}")
        return [("class:status", " " + "  •  ".join(parts)),
                ("class:hint", "   ^p commands")]

    status_bar = Window(
        FormattedTextControl(get_status_text), height=1, style="class:status",
    )

    # ── History sidebar ──────────────────────────────────────────────

    history_list = SelectableList()

    def refresh_history(follow_current=True):
        items = []
        for e in state.entries:
            preview = e.preview_text or "(empty)"
            items.append((str(e.id), f"{preview:<33} {e.display_date}"))
        history_list.set_items(items)
        if follow_current and state.current_entry is not None:
            for i, (entry_id, _) in enumerate(items):
                if entry_id == str(state.current_entry.id):
                    history_list.selected_index = i
                    break

    def open_entry(entry_id):
        entry = state.find_entry(entry_id)
        if entry is None:
            return
        state.select(entry)
        sync_editor()
        refresh_history()
        get_app().layout.focus(editor_area)
        get_app().invalidate()

    history_list.on_select = open_entry

    def get_history_header():
        location = str(state.store.directory)
        if state.settings.custom_directory is None:
            location += " (default)"
        return [
            ("class:accent", " History\n"),
            ("class:hint", f" {location}\n"),
            ("class:hint", " (enter) open (d) delete\n"),
        ]

    history_panel = HSplit([
        Window(FormattedTextControl(get_history_header), height=3,
               dont_extend_height=True),
        history_list,
    ], width=D(preferred=46), style="class:history")

    def get_editor_body():
        parts = [Window(width=4), editor_area, Window(width=4)]
        if state.show_history:
            parts.append(Window(width=1, char="│", style="class:hint"))
            parts.append(history_panel)
        return VSplit(parts)

    editor_screen = HSplit([
        DynamicContainer(get_editor_body),
        status_bar,
    ])

    # ── Zen screen ───────────────────────────────────────────────────

    zen_input = TextArea(multiline=False, style="class:zen", width=D(preferred=72))

    def _on_zen_changed(buf):
        if state.zen is not None:
            state.zen.current_line = buf.text
            state.dirty = True

    zen_input.buffer.on_text_changed += _on_zen_changed

    def _zen_accept(buf):
        if state.zen is not None:
            state.zen.submit()
            state.dirty = True
        buf.text = ""
        return True

    zen_input.buffer.accept_handler = _zen_accept

    def get_zen_footer():
        if state.notification:
            return [("class:zen.hint", state.notification)]
        if state.timer.running or not state.timer.is_default:
            return [("class:zen.hint", state.timer.formatted)]
        return [("class:zen.hint", "")]

    zen_screen = HSplit([
        Window(),
        VSplit([Window(), zen_input, Window()]),
        Window(),
        Window(FormattedTextControl(get_zen_footer), height=1,
               align=WindowAlign.CENTER, style="class:zen"),
    ], style="class:zen")

    # ── Screen switcher ──────────────────────────────────────────────

    def get_current_screen():
        if state.zen is not None:
            return zen_screen
        return editor_screen

    root = FloatContainer(
        content=DynamicContainer(get_current_screen),
        floats=[],
    )
    state.root_container = root

    # ── Actions ──────────────────────────────────────────────────────

    def do_save():
        state.save_current()
        refresh_history()
        if state.load_failed:
            show_notification(state, "This entry could not be read; not saved.")
        else:
            show_notification(state, "Saved.")

    def do_new_entry():
        try:
            state.new_entry()
        except StorageError as exc:
            show_notification(state, str(exc))
            return
        sync_editor()
        refresh_history()
        get_app().layout.focus(editor_area)

    def toggle_history():
        state.show_history = not state.show_history
        if state.show_history:
            refresh_history()
            get_app().layout.focus(history_list.window)
        else:
            get_app().layout.focus(editor_area)
        get_app().invalidate()

    def enter_zen():
        state.enter_zen()
        zen_input.text = state.zen.current_line
        zen_input.buffer.cursor_position = len(zen_input.text)
        get_app().layout.focus(zen_input)
        show_notification(state, "Zen Mode. Just write.", duration=2.0)

    def exit_zen():
        state.exit_zen()
        sync_editor()
        refresh_history()
        get_app().layout.focus(editor_area)
        get_app().invalidate()

    def toggle_zen():
        if state.zen is None:
            enter_zen()
        else:
            exit_zen()

    def toggle_timer():
        state.timer.toggle()
        get_app().invalidate()

    def adjust_timer(minutes):
        if state.timer.running:
            show_notification(state, "Pause the timer to change it.")
            return
        state.timer.adjust(minutes)
        get_app().invalidate()

    def toggle_theme():
        state.toggle_theme()
        get_app().invalidate()

    def share(service):
        if not open_in_chat(service, state.current_text()):
            show_notification(state, "Entry is too long to open in chat.")

    def reset_directory():
        state.reset_directory()
        sync_editor()
        refresh_history()
        show_notification(state, f"Using {state.store.directory}")

    async def choose_directory():
        dlg = FolderDialog(initial=str(state.store.directory))
        path = await show_dialog_as_float(state, dlg)
        if not path:
            return
        if not state.change_directory(path):
            show_notification(state, f"Not a folder: {path}")
            return
        sync_editor()
        refresh_history()
        show_notification(state, f"Using {state.store.directory}")

    def delete_selected():
        if not history_list.items:
            return
        entry = state.find_entry(history_list.items[history_list.selected_index][0])
        if entry is None:
            return

        async def _do():
            label = entry.preview_text or "(empty)"
            dlg = ConfirmDialog(f"Delete '{label}' from {entry.display_date}?")
            ok = await show_dialog_as_float(state, dlg)
            if not ok:
                return
            was_current = entry is state.current_entry
            try:
                state.delete_entry(entry)
            except StorageError as exc:
                show_notification(state, str(exc))
                return
            if was_current:
                sync_editor()
            refresh_history()
            show_notification(state, "Entry deleted.")

        asyncio.ensure_future(_do())

    def do_quit():
        if state.zen is not None:
            state.exit_zen()
        state.save_current()
        get_app().exit()

    # ── One-second tick ──────────────────────────────────────────────

    async def tick_loop():
        while True:
            await asyncio.sleep(1)
            in_zen = state.zen is not None
            if state.tick():
                if in_zen:
                    sync_editor()
                    get_app().layout.focus(editor_area)
                show_notification(state, "Time's up.")
            if state.show_history:
                refresh_history(follow_current=False)
            get_app().invalidate()

    def start_tick():
        state.tick_task = asyncio.ensure_future(tick_loop())

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()

    no_float = Condition(lambda: len(state.root_container.floats) == 0)
    in_zen = Condition(lambda: state.zen is not None)
    history_focused = Condition(
        lambda: state.show_history
        and get_app().layout.current_window == history_list.window)

    @kb.add("escape", eager=True)
    def _(event):
        if state.root_container.floats:
            dialog = state.root_container.floats[-1].content
            if hasattr(dialog, 'cancel'):
                dialog.cancel()
            elif hasattr(dialog, 'future') and not dialog.future.done():
                dialog.future.set_result(None)
        elif state.zen is not None:
            exit_zen()
        elif state.show_history:
            toggle_history()

    @kb.add("c-q")
    def _(event):
        if state.root_container.floats:
            return
        now = time.monotonic()
        if now - state.quit_pending < 2.0:
            do_quit()
        else:
            state.quit_pending = now
            show_notification(state, "Press Ctrl+Q again to quit.", duration=2.0)

    @kb.add("c-s", filter=no_float)
    def _(event):
        do_save()

    @kb.add("c-t", filter=no_float)
    def _(event):
        toggle_timer()

    @kb.add("c-e", filter=no_float)
    def _(event):
        toggle_zen()

    @kb.add("c-n", filter=no_float & ~in_zen)
    def _(event):
        do_new_entry()

    @kb.add("c-o", filter=no_float & ~in_zen)
    def _(event):
        toggle_history()

    @kb.add("c-l", filter=no_float)
    def _(event):
        toggle_theme()

    @kb.add("d", filter=no_float & history_focused)
    def _(event):
        delete_selected()

    @kb.add("c-p", filter=no_float & ~in_zen)
    def _(event):
        async def _do():
            cmds = [
                ("New entry", "^N", do_new_entry),
                ("History", "^O", toggle_history),
                ("Zen mode", "^E", toggle_zen),
                ("Start/pause timer", "^T", toggle_timer),
                ("Timer +5 min", "while paused", lambda: adjust_timer(TIMER_STEP_MINUTES)),
                ("Timer -5 min", "while paused", lambda: adjust_timer(-TIMER_STEP_MINUTES)),
                ("Reset timer", "15:00", lambda: state.timer.reset()),
                ("Toggle theme", "^L", toggle_theme),
                ("Open in ChatGPT", "chat.openai.com", lambda: share("chatgpt")),
                ("Open in Claude", "claude.ai", lambda: share("claude")),
                ("Choose folder", "custom location", choose_directory),
                ("Reset folder", "default location", reset_directory),
                ("Save", "^S", lambda: do_save()),
                ("Quit", "^Q", do_quit),
            ]
            dlg = CommandPaletteDialog(cmds)
            action = await show_dialog_as_float(state, dlg)
            if action is not None:
                if asyncio.iscoroutinefunction(action):
                    await action()
                elif callable(action):
                    action()

        asyncio.ensure_future(_do())

    # ── Build Application ────────────────────────────────────────────

    refresh_history()
    sync_editor()

    layout = Layout(root, focused_element=editor_area)

    app = Application(
        layout=layout,
        key_bindings=kb,
        style=DynamicStyle(lambda: _STYLES[state.settings.theme]),
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05
    app.pre_run_callables.append(start_tick)

    return app


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def main() -> None:
    log_file = configure_logging()
    logger.info("Starting freewrite, logging to {}", log_file)
    app = create_app(Settings.load())
    app.run()


if __name__ == "__main__":
    main()
