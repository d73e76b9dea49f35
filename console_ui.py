from __future__ import annotations

import os
import sys
from threading import Lock
from typing import TYPE_CHECKING, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import FileHistory
from prompt_toolkit.shortcuts import CompleteStyle

from common import log

if TYPE_CHECKING:
    from bot_api import BotEngine

QUIT_WORDS = (":q", ":quit", ":exit")
# switch the identity used for console commands
AS_WORDS = (":guild", ":channel", ":user")


class _CommandCompleter(Completer):
    """Completer listing ?/! commands plus the : shortcuts."""

    def __init__(self, console: "ConsoleUI"):
        self.console = console

    def get_completions(self, document, complete_event):
        text = (document.text_before_cursor or "").lstrip()
        if " " in text:
            return
        for word in self.console._command_words():
            if word.startswith(text):
                yield Completion(word, start_position=-len(text))


class ConsoleUI:
    """
    Console front end: a blocking prompt in its own thread while the alarm
    thread keeps delivering and logging to stdout.

    Commands run as the configured console identity (guild/channel/user),
    which can be switched with :guild, :channel and :user.
    """

    class _History(FileHistory):
        """Persisted history that skips quit commands and empties."""
        def append_string(self, string: str) -> None:
            s = (string or "").strip()
            if not s or s in QUIT_WORDS:
                return
            super().append_string(string)

    def __init__(self, eng: "BotEngine"):
        self.eng = eng
        self._alive = True
        self._stop_notified = False
        self._hist_file = os.path.expanduser("~/.doat_console_history")
        self._history = ConsoleUI._History(self._hist_file)
        self._completer = _CommandCompleter(self)
        self._session = PromptSession(
            completer=self._completer,
            complete_while_typing=False,
            history=self._history,
        )
        self._complete_style = CompleteStyle.COLUMN
        self._print_lock = Lock()

    def _command_words(self) -> List[str]:
        words = set(QUIT_WORDS) | set(AS_WORDS)
        reg = self.eng._registry
        if reg:
            words.update(reg.names())
        return sorted(words)

    def _prompt_text(self) -> str:
        gid = self.eng.cfg.CONSOLE_GUILD_ID or "-"
        return f"[{gid}]> "

    def _switch_identity(self, line: str) -> Optional[str]:
        """Handle :guild/:channel/:user; returns feedback, or None if not one of them."""
        parts = line.split(None, 1)
        if parts[0] not in AS_WORDS:
            return None
        field = {":guild": "CONSOLE_GUILD_ID", ":channel": "CONSOLE_CHANNEL_ID", ":user": "CONSOLE_USER_ID"}[parts[0]]
        if len(parts) == 1:
            return f"{parts[0][1:]}: {getattr(self.eng.cfg, field) or '-'}"
        setattr(self.eng.cfg, field, parts[1].strip())
        log().info("console.identity", field=field, value=parts[1].strip())
        return f"{parts[0][1:]} set to {parts[1].strip()}"

    def run(self):
        log().info("Console ready; type ?help or :q to exit")
        while self._alive:
            try:
                line = self._session.prompt(
                    self._prompt_text(),
                    complete_style=self._complete_style,
                ).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            if line in QUIT_WORDS:
                break
            feedback = self._switch_identity(line)
            if feedback is not None:
                self.append_output(feedback)
                continue
            try:
                self.eng.dispatch_command(line, origin="console")
            except Exception as e:
                log().exc(e, where="console.dispatch")
                self.append_output(f"Error: {e}")
        if not self._stop_notified:
            self._stop_notified = True
            self.eng.request_stop()

    def stop(self):
        self._alive = False
        if not self._stop_notified:
            self._stop_notified = True
            self.eng.request_stop()
        app = getattr(self._session, "app", None)
        if app and app.is_running:
            app.exit("")

    def append_output(self, text: str):
        with self._print_lock:
            sys.stdout.write(text + "\n")
            sys.stdout.flush()
