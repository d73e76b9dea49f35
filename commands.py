# commands.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple, Optional, List, Sequence, TYPE_CHECKING
import math
import re
import textwrap

import tabulate
from rich.console import Console
from rich.markdown import Markdown, Heading
from rich.theme import Theme
from rich.text import Text

from common import BadRequest, log, ts_human
from formatters import Kind, UnknownKind, render
from guild_scheduler import ScheduleRequest
from permissions import Caller, is_moderator_or_owner

if TYPE_CHECKING:
    from bot_api import BotEngine


__all__ = ["OC", "OCText", "OCMarkDown", "OCTable", "CO", "CommandRegistry", "build_registry",
           "RICH_MD_THEME", "RICH_MD_CONFIG", "RENDER_MARKDOWN", "GENERIC_FAILURE"]

AT_KEY = "?"
BANG_KEY = "!"

# Toggle pure markdown (no rich rendering) for debugging.
RENDER_MARKDOWN = True

GENERIC_FAILURE = "❌ Something went wrong while processing that command."
NEED_GUILD = "Use this command inside a server."
NEED_MODERATOR = "Only moderators or the server owner can use this command."

# values above this are taken as milliseconds
MS_THRESHOLD = 10_000_000_000
# 9999-12-30T23:59:59Z: one day short of datetime.max so any local tz still formats
MAX_DUE_UNIX = 253_402_214_399
SNOWFLAKE_RE = re.compile(r"^\d{5,30}$")
MAX_MESSAGE_LEN = 2000


# Rich Markdown theme/styles (tweak as needed)
T_NORMAL = "grey66"
RICH_MD_THEME = Theme({
    "markdown.paragraph": T_NORMAL,
    "markdown.em": "italic light_sky_blue3",
    "markdown.strong": "bold grey93",
    "heading.h1": "bold turquoise2",
    "heading.h2": "bold dark_turquoise",
    "heading.h3": "bold cyan3",
    "markdown.item": T_NORMAL,
    "markdown.item.bullet": T_NORMAL,
    "markdown.code_block": "steel_blue",
})
RICH_MD_CONFIG = {
    "style": "markdown.text",
    "code_theme": "lightbulb",
    "width": None,  # use terminal width
}

ULINE = ["═", "─", "·"]


# Custom heading renderer to avoid boxed/centered titles.
class FlatHeading(Heading):
    def __rich_console__(self, console, options):
        tt = self.text.plain  # title text
        style = f"heading.{self.tag}"
        i = min(int(style[-1]) - 1, len(ULINE) - 1)
        yield Text(tt, style=style, justify="left")
        yield Text(ULINE[i] * len(tt), style=style, justify="left")

# Patch Markdown to use the flat heading renderer
Markdown.elements["heading_open"] = FlatHeading


# ============== UI OUTPUT MODEL ==============

@dataclass
class OC:
    """Base command Output Component. Subclasses know how to render themselves."""

    def render_console(self, eng: BotEngine) -> str:
        raise NotImplementedError

    def plain(self) -> str:
        raise NotImplementedError


@dataclass
class OCText(OC):
    text: str

    def __post_init__(self):
        if self.text is None:
            raise ValueError("OCText requires 'text'")

    def render_console(self, eng: BotEngine) -> str:
        eng._send_text_console(self.text)
        return self.text

    def plain(self) -> str:
        return self.text


@dataclass
class OCMarkDown(OC):
    text: str

    def __post_init__(self):
        if self.text is None:
            raise ValueError("OCMarkDown requires 'text'")

    def render_console(self, eng: BotEngine) -> str:
        if not RENDER_MARKDOWN:
            eng._send_text_console(self.text)
            return self.text
        console = Console(theme=RICH_MD_THEME, width=RICH_MD_CONFIG.get("width"))
        md = Markdown(self.text, style=RICH_MD_CONFIG["style"], code_theme=RICH_MD_CONFIG["code_theme"])
        with console.capture() as cap:
            console.print(md)
        rendered = cap.get()
        # Collapse excessive blank lines that can appear between markdown blocks
        rendered = re.sub(r"\n{2,}", "\n\n", rendered)
        eng._send_text_console(rendered)
        return rendered

    def plain(self) -> str:
        return self.text


@dataclass
class OCTable(OC):
    headers: List[str]
    rows: List[Sequence[Any]]

    def __post_init__(self):
        if not self.headers:
            raise ValueError("OCTable requires non-empty headers")
        if self.rows is None:
            raise ValueError("OCTable requires 'rows' list")

    def render_console(self, eng: BotEngine) -> str:
        text = self.plain()
        eng._send_text_console(text)
        return text

    def plain(self) -> str:
        if not self.rows:
            return "(empty)"
        return tabulate.tabulate(self.rows, headers=self.headers, tablefmt="github")


class CO:
    """Collection of OutputComponent"""

    def __init__(self, *args):
        """Very tolerant init method for convenience"""
        cc = self.components = []
        for arg in args:
            argh = [arg] if not isinstance(arg, (List, Tuple)) else arg
            for aargh in argh:
                if isinstance(aargh, str):
                    cc.append(OCText(aargh))
                elif not isinstance(aargh, OC):
                    name = aargh.__class__.__name__
                    raise TypeError(f"Output item must be OC (output component) subclass or str, not {name}")
                else:
                    cc.append(aargh)

    def __iter__(self):
        return self.components.__iter__()

    def plain(self) -> str:
        return "\n".join(c.plain() for c in self.components)

    components: List[OC] = field(default_factory=list)


Handler = Callable[["BotEngine", Caller, Dict[str, str]], Any]


class CommandRegistry:
    """
    Unified command registry with positional argspec + key:value options.

    - Register handlers via @R.at(name, argspec=[...], options=[...]) or
      @R.bang(name, argspec=[...], options=[...])

    - Dispatcher parses:
        * positionals in order (with rest=True the last one takes the
          remaining text), then
        * remaining tokens as key:value options (only those declared).

    - guild=True commands need a guild context; moderator=True commands are
      gated to moderators or the guild owner.

    - Auto-help: builds usage + summary from registered metadata/docstrings.
    """
    def __init__(self):
        # keys are ('?'|'!', command_name)
        self._handlers: Dict[Tuple[str, str], Handler] = {}
        self._meta: Dict[Tuple[str, str], Dict[str, Any]] = {}

    # ---- decorators ----
    def at(self, name: str, argspec: List[str] = None, options: List[str] = None, nreq: Optional[int] = None,
           rest: bool = False, guild: bool = False, moderator: bool = False):
        return self._reg((AT_KEY, name.lower()), argspec, options, nreq, rest, guild, moderator)

    def bang(self, name: str, argspec: List[str] = None, options: List[str] = None, nreq: Optional[int] = None,
             rest: bool = False, guild: bool = False, moderator: bool = False):
        return self._reg((BANG_KEY, name.lower()), argspec, options, nreq, rest, guild, moderator)

    def _reg(self, key: Tuple[str, str], argspec: Optional[List[str]], options: Optional[List[str]],
             nreq: Optional[int], rest: bool, guild: bool, moderator: bool):
        def deco(fn):
            self._handlers[key] = fn
            # Extract first docstring line as summary (if present)
            l_doc = _remove_indent(fn.__doc__ or "")
            summary = "" if not l_doc else l_doc[0]
            self._meta[key] = {
                "argspec": list(argspec or []),
                "options": set(options or []),
                "rest": bool(rest),
                "guild": bool(guild or moderator),
                "moderator": bool(moderator),
                "summary": summary,
                "name": key[1],
                "prefix": key[0],
                "doc": "\n".join(l_doc),
                "nreq": int(nreq) if nreq is not None else (len(argspec or [])),
            }
            return fn
        return deco

    def names(self) -> List[str]:
        return [f"{p}{n}" for (p, n) in sorted(self._handlers.keys())]

    # ---- dispatcher ----
    def dispatch(self, eng: BotEngine, msg: str, caller: Optional[Caller] = None) -> CO:
        caller = caller or Caller()
        s = (msg or "").strip()
        log().debug("dispatch.enter", text=s)
        if not s or s[0] not in (AT_KEY, BANG_KEY):
            log().debug("dispatch.exit", reason="not-a-command")
            return self._help_text()

        prefix = s[0]
        parts = s.split(None, 1)
        head = parts[0][1:].lower()
        tail = parts[1].strip() if len(parts) > 1 else ""
        handler = self._handlers.get((prefix, head))
        meta = self._meta.get((prefix, head))

        if not handler:
            log().warn("dispatch.unknown", prefix=prefix, head=head)
            return CO(f"Unknown command: {prefix}{head}. Try {AT_KEY}help.")

        # Parse args according to argspec/options
        args, errors = self._parse_args(tail, meta)
        if errors:
            return CO(OCMarkDown(self._usage_line(meta, reason="; ".join(errors))))
        nreq = meta.get("nreq", len(meta["argspec"]))
        missing = [a for a in meta["argspec"][:nreq] if a not in args]
        if missing:
            return CO(OCMarkDown(self._usage_line(meta, reason=f"Missing: {', '.join(missing)}")))

        log().debug("dispatch.call", cmd=head, prefix=prefix, args=args, guild_id=caller.guild_id)
        try:
            if meta["guild"] and not caller.guild_id:
                return CO(NEED_GUILD)
            if meta["moderator"] and not is_moderator_or_owner(caller, eng.messenger):
                log().info("dispatch.denied", cmd=head, guild_id=caller.guild_id, user_id=caller.user_id)
                return CO(NEED_MODERATOR)
            out = handler(eng, caller, args)
            log().debug("dispatch.ok", cmd=head)
            return out if isinstance(out, CO) else CO(out)
        except BadRequest as e:
            return CO(str(e))
        except Exception as e:
            log().exc(e, where="dispatch.handler", cmd=head)
            return CO(GENERIC_FAILURE)

    # ---- parsing helpers ----
    def _parse_args(self, tail: str, meta: Dict[str, Any]) -> Tuple[Dict[str, str], List[str]]:
        argspec: List[str] = meta.get("argspec", [])
        options: set = meta.get("options", set())

        result: Dict[str, str] = {}
        errors: List[str] = []

        if meta.get("rest") and argspec:
            n_before = len(argspec) - 1
            parts = tail.split(None, n_before) if tail else []
            for name, tok in zip(argspec[:n_before], parts):
                result[name] = tok
            remainder = parts[n_before] if len(parts) > n_before else ""
            # trailing key:value tokens belong to options, not to the text
            toks: List[str] = []
            while remainder:
                bits = remainder.rsplit(None, 1)
                last = bits[-1]
                k = re.split(r"[:=]", last, maxsplit=1)[0].strip().lower()
                if (":" in last or "=" in last) and k in options:
                    toks.insert(0, last)
                    remainder = bits[0] if len(bits) > 1 else ""
                else:
                    break
            if remainder.strip():
                result[argspec[-1]] = remainder.strip()
        else:
            toks = tail.split() if tail else []
            # Fill positionals
            for name in argspec:
                if not toks:
                    break
                # If the next token looks like a known option, don't consume it as positional
                if ":" in toks[0] or "=" in toks[0]:
                    k = re.split(r"[:=]", toks[0], maxsplit=1)[0].strip().lower()
                    if k in options:
                        break
                result[name] = toks.pop(0)

        # Remaining tokens as key:value (only declared options)
        for tok in toks:
            if ":" in tok or "=" in tok:
                k, v = re.split(r"[:=]", tok, maxsplit=1)
                k = k.strip().lower()
                if k in options:
                    result[k] = v.strip()
                else:
                    errors.append(f"Unknown option '{k}'")
            else:
                errors.append(f"Unexpected token '{tok}'")

        return result, errors

    # ---- help/usage ----
    def _usage_line(self, meta: Dict[str, Any], reason: Optional[str] = None) -> str:
        pre = meta["prefix"]
        name = meta["name"]
        argspec = list(meta["argspec"])
        nreq = meta.get("nreq", len(argspec))
        pos_parts: List[str] = []
        for i, a in enumerate(argspec):
            rendered = f"⟨{a}⟩"
            if meta.get("rest") and i == len(argspec) - 1:
                rendered = f"⟨{a}…⟩"
            if i >= nreq:
                rendered = f"[{rendered}]"
            pos_parts.append(rendered)
        pos = " ".join(pos_parts)
        opt = ""
        if meta["options"]:
            opt = " " + " ".join(f"[{o}:•]" for o in sorted(meta["options"]))
        line = f"`{pre}{name}`" + (f" {pos}" if pos else "") + opt
        line = re.sub(r"\s{2,}", " ", line).strip()
        if reason:
            return f"🧩 **{reason}** 🧩 {line}"
        return line

    def _help_text(self, detail: int = 1, command: Optional[str] = None) -> CO:
        """Build a help listing from registered commands."""
        metas = []
        cmd_filter = (command or "").strip().lower()
        want_prefix = None
        if cmd_filter.startswith(AT_KEY) or cmd_filter.startswith(BANG_KEY):
            want_prefix = cmd_filter[0]
            cmd_filter = cmd_filter[1:]

        for (prefix, name) in sorted(self._handlers.keys()):
            if cmd_filter and name != cmd_filter:
                continue
            if want_prefix and prefix != want_prefix:
                continue
            metas.append(self._meta[(prefix, name)])

        if detail == 1:
            parts = [f"`{m['prefix']}{m['name']}`" for m in metas]
            body = "  ".join(parts) if parts else "(none)"
            return CO(OCMarkDown(f"**Commands**: {body}"))

        if detail in (2, 3):
            lines: List[str] = ["# Commands", ""]
            for m in metas:
                bullet = f"- {self._usage_line(m)}"
                if detail == 3 and m["summary"]:
                    bullet += f": *{m['summary']}*"
                lines.append(bullet)
            return CO(OCMarkDown("\n".join(lines)))

        # detail 4: full docs for all matched commands
        if not metas:
            return CO(OCMarkDown("(no match)"))
        blocks: List[str] = []
        for m in metas:
            doc = m["doc"].strip("\n")
            paras = [p.strip("\n") for p in re.split(r"\n\s*\n", doc) if p.strip()]
            block = [self._usage_line(m)]
            if paras:
                block.extend(["", f"*{paras[0]}*"])
            if len(paras) > 1:
                block.extend(["", "```", textwrap.indent("\n\n".join(paras[1:]), "  "), "```"])
            blocks.append("\n".join(block))
        return CO(OCMarkDown("\n\n".join(blocks)))


# ===== input validation (shared by the schedule commands) =====

def _parse_due_unix(raw: str, now_ms: int) -> int:
    """Integer unix seconds (milliseconds accepted), strictly in the future."""
    bad = BadRequest("`timestamp` must be an integer Unix timestamp in seconds.")
    try:
        f = float(str(raw).strip())
    except ValueError:
        raise bad from None
    if not math.isfinite(f) or not f.is_integer():
        raise bad
    ts = int(f)
    if ts > MS_THRESHOLD:
        ts = ts // 1000  # accept ms
    if ts > MAX_DUE_UNIX:
        raise bad
    if ts <= now_ms // 1000:
        raise BadRequest("That timestamp is in the past.")
    return ts


def _unwrap_mention(raw: str) -> str:
    """<@&123>, <@123>, <@!123> -> 123; anything else unchanged."""
    s = str(raw or "").strip()
    m = re.fullmatch(r"<@[&!]?(\d+)>", s)
    return m.group(1) if m else s


def _role_id_error(subject: str) -> Optional[str]:
    return None if SNOWFLAKE_RE.match(subject) else "Invalid role."


def _user_id_error(subject: str) -> Optional[str]:
    return None if SNOWFLAKE_RE.match(subject) else "Invalid user."


def _message_error(subject: str) -> Optional[str]:
    if len(subject) == 0:
        return "Message cannot be empty."
    if len(subject) > MAX_MESSAGE_LEN:
        return f"Message too long (max {MAX_MESSAGE_LEN} chars)."
    return None


def _boolish(v: Optional[str]) -> bool:
    if v is None:
        return False
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "y", "on"): return True
    if s in ("0", "false", "no", "n", "off", ""): return False
    raise BadRequest(f"`repeat_daily` must be true or false, not '{v}'.")


def build_registry() -> CommandRegistry:
    R = CommandRegistry()

    # Local helpers to keep handlers concise
    def _md(text: str) -> CO:
        return CO(OCMarkDown(text))

    def _txt(text: str) -> CO:
        return CO(OCText(text))

    def _schedule(eng: BotEngine, caller: Caller, args: Dict[str, str], kind: Kind, subject: str,
                  validator: Callable[[str], Optional[str]]) -> CO:
        err = validator(subject)
        if err:
            return _txt(err)
        due_unix = _parse_due_unix(args["timestamp"], eng.now_ms())
        repeats = _boolish(args.get("repeat_daily"))
        gs = eng.hub.get(caller.guild_id)
        job = gs.schedule(ScheduleRequest(
            tenant_id=caller.guild_id,
            channel_id=caller.channel_id,
            kind=kind.value,
            subject=subject,
            due_unix=due_unix,
            repeats_daily=repeats,
            created_by=caller.user_id,
        ))
        lines = [f"✅ Scheduled job for {ts_human(job.due_at_ms)}"]
        if job.repeats_daily:
            lines.append("🔁 Repeats daily.")
        lines.append(f"Job ID: `{job.id}`")
        return _md("\n\n".join(lines))

    # ----------------------- HELP -----------------------
    @R.at("help", argspec=["command"], options=["detail"], nreq=0)
    def _at_help(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """Show this help.

        Usage:
          ?help [command] [detail:1-4]
        """
        cmd = args.get("command")
        # default detail: 4 if a specific command was passed; otherwise 1
        try:
            detail = int(args.get("detail", "4" if cmd else "1"))
        except ValueError:
            raise BadRequest("`detail` must be 1-4.") from None
        return R._help_text(detail=detail, command=cmd)

    # ----------------------- ALIVE -----------------------
    @R.at("alive")
    def _at_alive(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """Replies if alive."""
        return _txt("I'm here!!1")

    # ----------------------- SCHEDULE -----------------------
    @R.bang("pingroleat", argspec=["timestamp", "role"], options=["repeat_daily"], moderator=True)
    def _bang_pingroleat(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """
        Schedule a role ping at a Unix timestamp (seconds).

        Usage:
          !pingroleat <timestamp> <role_id|@role> [repeat_daily:true]
        """
        return _schedule(eng, caller, args, Kind.PING_ROLE, _unwrap_mention(args["role"]), _role_id_error)

    @R.bang("pingmeat", argspec=["timestamp", "user"], options=["repeat_daily"], moderator=True)
    def _bang_pingmeat(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """
        Schedule a user ping at a Unix timestamp (seconds).

        Usage:
          !pingmeat <timestamp> <user_id|@user> [repeat_daily:true]
        """
        return _schedule(eng, caller, args, Kind.PING_USER, _unwrap_mention(args["user"]), _user_id_error)

    @R.bang("sayat", argspec=["timestamp", "message"], options=["repeat_daily"], rest=True, moderator=True)
    def _bang_sayat(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """
        Schedule a message at a Unix timestamp (seconds).

        Usage:
          !sayat <timestamp> <message ...> [repeat_daily:true]

        The message is everything after the timestamp, up to 2000 chars.
        """
        return _schedule(eng, caller, args, Kind.CHANNEL_MESSAGE, args["message"], _message_error)

    # ----------------------- LIST -----------------------
    @R.at("doat-list", moderator=True)
    def _at_doat_list(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """List scheduled messages for this server."""
        jobs = eng.hub.get(caller.guild_id).list_jobs()
        if not jobs:
            return _txt("No scheduled jobs.")
        limit = int(eng.cfg.LIST_LIMIT or 15)
        rows: List[Sequence[Any]] = []
        for j in jobs[:limit]:
            try:
                what = render(j).inner
            except UnknownKind:
                what = f"({j.kind}?)"
            rows.append([ts_human(j.due_at_ms), what, j.channel_id, "🔁 daily" if j.repeats_daily else "", j.id])
        intro = OCMarkDown(f"📌 Scheduled jobs ({len(jobs)} total):")
        return CO(intro, OCTable(headers=["due", "what", "channel", "repeat", "id"], rows=rows))

    # ----------------------- CANCEL -----------------------
    @R.bang("doat-cancel", argspec=["job_id"], moderator=True)
    def _bang_doat_cancel(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """
        Cancel a scheduled ping by job ID.

        Usage:
          !doat-cancel <job_id>
        """
        job_id = args["job_id"].strip()
        removed = eng.hub.get(caller.guild_id).cancel(job_id)
        if removed is None:
            return _md(f"No job found: `{job_id}`")
        return _md(f"🗑️ Cancelled job `{job_id}` scheduled for {ts_human(removed.due_at_ms)}.")

    # ----------------------- NEXT WAKE -----------------------
    @R.at("doat-next", moderator=True)
    def _at_doat_next(eng: BotEngine, caller: Caller, args: Dict[str, str]) -> CO:
        """Show when this server's scheduler wakes up next."""
        wake = eng.hub.get(caller.guild_id).next_wake()
        if wake is None:
            return _txt("No pending wake.")
        return _txt(f"⏰ Next wake: {ts_human(wake)}")

    return R


def _remove_indent(docstring: str) -> List[str]:
    if not docstring:
        return []
    lines = docstring.splitlines()

    # compute common indent from lines after the first
    rest = [ln for ln in lines[1:] if ln.strip()]
    if rest:
        indents = [len(ln) - len(ln.lstrip(" ")) for ln in rest]
        common = min(indents)
    else:
        common = 0

    def strip_prefix(ln: str) -> str:
        if common <= 0:
            return ln
        # remove up to 'common' leading spaces if they are present
        return ln[common:] if ln.startswith(" " * common) else ln

    stripped = [strip_prefix(ln) for ln in lines]
    # docstrings that open on the next line start with an empty line
    while stripped and not stripped[0].strip():
        stripped.pop(0)
    return stripped
