"""Parse a game-world map dump (`map.sql`) into settlement records.

The dump is a stream of SQL-ish statements. Only `INSERT INTO <dump_table>
VALUES (...)[, (...)]` statements carry rows; comments, DDL and inserts into
other tables are skipped. Nothing is ever executed: the text is tokenised
once, left to right, and literal values are pulled out of each tuple.

Damage from a broken row stays on its line: quoted strings never span a
line break (dumps escape newlines as \\n), and an INSERT or `(` opening a
line resynchronises the scan.

Column order of a row (extra trailing columns are ignored):

    world id, x, y, tribe, settlement id, name, player id, player,
    alliance id, alliance, population, capital, wonder, wonder name
"""

from __future__ import annotations

import re
from typing import Iterator, NamedTuple, Optional

from loguru import logger
from pydantic import ValidationError

from mapwatch.config import settings
from mapwatch.errors import ParseError
from mapwatch.models.schemas import ParseResult, Settlement, SkippedRow

MIN_FIELDS = 11  # everything up to and including population
MAX_FIELDS = 14

_TOKEN_RE = re.compile(
    r"""
      (?P<str>'(?:[^'\\\n]|\\[^\n]|'')*'|"(?:[^"\\\n]|\\[^\n]|"")*")
    | (?P<comment>--[^\n]*|\#[^\n]*|/\*.*?\*/)
    | (?P<punct>[(),;])
    | (?P<ws>\s+)
    | (?P<word>[^\s(),;'"]+)
    | (?P<bad>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "Z": "\x1a", "b": "\b"}
_UNESCAPE_RE = {
    "'": re.compile(r"\\(.)|''", re.DOTALL),
    '"': re.compile(r'\\(.)|""', re.DOTALL),
}

# Anything else (FALSE, 0, NULL, empty, region names) reads as unset
_TRUE_MARKERS = {"1", "TRUE", "T", "Y", "YES", "CAPITAL"}


class _Token(NamedTuple):
    kind: str  # str | punct | word | bad
    text: str
    pos: int
    bol: bool = False  # first significant token on its line


class _Field(NamedTuple):
    quoted: bool
    value: Optional[str]  # None for a bare NULL


class _RowError(ValueError):
    pass


class _LineCounter:
    """Maps text offsets to 1-based line numbers; offsets must be non-decreasing."""

    def __init__(self, text: str):
        self._text = text
        self._pos = 0
        self._line = 1

    def line_at(self, pos: int) -> int:
        if pos > self._pos:
            self._line += self._text.count("\n", self._pos, pos)
            self._pos = pos
        return self._line


def _unquote(raw: str) -> str:
    quote = raw[0]
    body = raw[1:-1]

    def _sub(m: re.Match) -> str:
        if m.group(1) is None:
            return quote
        return _ESCAPES.get(m.group(1), m.group(1))

    return _UNESCAPE_RE[quote].sub(_sub, body)


def _iter_statements(text: str) -> Iterator[list[_Token]]:
    """Yield the significant tokens of each `;`-terminated statement.

    An INSERT that opens a line also starts a new statement, so a row cut
    off before its `;` cannot swallow the statement after it.
    """
    current: list[_Token] = []
    line_start = True
    for m in _TOKEN_RE.finditer(text):
        kind = m.lastgroup
        value = m.group()
        if kind in ("ws", "comment"):
            line_start = line_start or "\n" in value
            continue
        if kind == "punct" and value == ";":
            if current:
                yield current
            current = []
            line_start = False
            continue
        if current and line_start and kind == "word" and value.upper() == "INSERT":
            yield current
            current = []
        current.append(_Token(kind, value, m.start(), line_start))
        line_start = False
    if current:
        yield current


def _is_word(tok: _Token, word: str) -> bool:
    return tok.kind == "word" and tok.text.upper() == word


def _target_table(tokens: list[_Token]) -> tuple[Optional[str], int]:
    """Return (table, index of first token after VALUES) for an INSERT, else (None, -1)."""
    n = len(tokens)
    if n < 4 or not _is_word(tokens[0], "INSERT"):
        return None, -1
    i = 1
    if _is_word(tokens[i], "IGNORE"):
        i += 1
    if i >= n or not _is_word(tokens[i], "INTO"):
        return None, -1
    i += 1
    if i >= n:
        return None, -1
    name_tok = tokens[i]
    table = _unquote(name_tok.text) if name_tok.kind == "str" else name_tok.text.strip("`")
    table = table.rsplit(".", 1)[-1].strip("`")
    i += 1
    if i < n and tokens[i].text == "(":
        while i < n and tokens[i].text != ")":
            i += 1
        i += 1
    if i >= n or not _is_word(tokens[i], "VALUES"):
        return None, -1
    return table, i + 1


def _iter_tuples(tokens: list[_Token], start: int) -> Iterator[tuple[int, Optional[list[_Field]], str]]:
    """Yield (offset, fields, error) for every parenthesised tuple after VALUES.

    A tuple that cannot be read yields fields=None plus the reason, and the
    scan resumes after its closing parenthesis, or at the next line that
    opens a tuple when it is never closed.
    """
    i = start
    n = len(tokens)
    while i < n:
        tok = tokens[i]
        if tok.text == ",":
            i += 1
            continue
        if tok.text != "(":
            yield tok.pos, None, f"unexpected token {tok.text[:20]!r} between rows"
            while i < n and tokens[i].text != "(":
                i += 1
            continue

        row_pos = tok.pos
        i += 1
        fields: list[_Field] = []
        pending: Optional[_Field] = None
        error = ""
        closed = False
        while i < n:
            tok = tokens[i]
            if tok.bol and tok.text == "(":
                break
            i += 1
            if tok.text == ")":
                closed = True
                break
            if tok.text == ",":
                fields.append(pending if pending is not None else _Field(False, ""))
                pending = None
                continue
            if tok.text == "(" or tok.kind == "bad":
                error = error or f"unexpected {tok.text!r} inside row"
                continue
            if pending is not None:
                error = error or "two values without a separator"
                continue
            if tok.kind == "str":
                pending = _Field(True, _unquote(tok.text))
            elif tok.text.upper() == "NULL":
                pending = _Field(False, None)
            else:
                pending = _Field(False, tok.text)
        if not closed:
            yield row_pos, None, "unterminated row"
            continue
        if pending is not None or fields:
            fields.append(pending if pending is not None else _Field(False, ""))
        yield row_pos, (None if error else fields), error


def _as_int(field: _Field, column: str, *, required: bool = False) -> Optional[int]:
    value = field.value
    if value is None or value.strip() == "":
        if required:
            raise _RowError(f"{column} is missing")
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise _RowError(f"{column} {value[:20]!r} is not an integer") from None


def _as_text(field: _Field) -> Optional[str]:
    if field.value is None or field.value == "":
        return None
    return field.value


def _as_flag(field: _Field) -> bool:
    if field.value is None:
        return False
    return field.value.strip().upper() in _TRUE_MARKERS


def _row_to_settlement(fields: list[_Field], map_radius: Optional[int]) -> Settlement:
    if len(fields) < MIN_FIELDS:
        raise _RowError(f"expected at least {MIN_FIELDS} values, got {len(fields)}")
    fields = fields[:MAX_FIELDS] + [_Field(False, None)] * (MAX_FIELDS - len(fields))

    x = _as_int(fields[1], "x", required=True)
    y = _as_int(fields[2], "y", required=True)
    if map_radius and (abs(x) > map_radius or abs(y) > map_radius):
        raise _RowError(f"coordinates ({x}|{y}) outside map radius {map_radius}")
    population = _as_int(fields[10], "population", required=True)
    if population < 0:
        raise _RowError(f"negative population {population}")
    if fields[5].value is None:
        raise _RowError("settlement name is missing")

    try:
        return Settlement(
            world_id=_as_int(fields[0], "world id"),
            x=x,
            y=y,
            tribe=_as_int(fields[3], "tribe"),
            settlement_id=_as_int(fields[4], "settlement id"),
            name=fields[5].value,
            player_id=_as_int(fields[6], "player id"),
            player=_as_text(fields[7]),
            alliance_id=_as_int(fields[8], "alliance id"),
            alliance=_as_text(fields[9]),
            population=population,
            is_capital=_as_flag(fields[11]),
            is_wonder=_as_flag(fields[12]),
            wonder_name=_as_text(fields[13]),
        )
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err["loc"])
        raise _RowError(f"{field}: {err['msg']}") from None


def parse_dump(
    raw: str | bytes,
    *,
    table: Optional[str] = None,
    map_radius: Optional[int] = None,
) -> ParseResult:
    """Extract every settlement row from a dump in one linear pass.

    Malformed rows are skipped and reported in `ParseResult.skipped`.
    Raises ParseError when the text holds no insert into the dump table, or
    when none of its rows are usable.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    table = (table or settings.dump_table).lower()
    if map_radius is None:
        map_radius = settings.default_map_radius

    if not raw.strip():
        raise ParseError("Dump is empty")

    lines = _LineCounter(raw)
    settlements: list[Settlement] = []
    skipped: list[SkippedRow] = []
    seen: set = set()
    statements = 0
    inserts = 0

    for tokens in _iter_statements(raw):
        statements += 1
        target, start = _target_table(tokens)
        if target is None or target.lower() != table:
            continue
        inserts += 1
        for pos, fields, error in _iter_tuples(tokens, start):
            line = lines.line_at(pos)
            if fields is not None:
                try:
                    settlement = _row_to_settlement(fields, map_radius)
                    if settlement.identity in seen:
                        raise _RowError(f"duplicate settlement {settlement.identity.key}")
                except _RowError as e:
                    error = str(e)
                else:
                    seen.add(settlement.identity)
                    settlements.append(settlement)
                    continue
            excerpt = raw[pos:pos + 120].split("\n", 1)[0]
            logger.debug("[parser] skipped row at line {}: {}", line, error)
            skipped.append(SkippedRow(line=line, reason=error, excerpt=excerpt))

    if inserts == 0:
        raise ParseError(
            f"Not a recognisable dump: no INSERT INTO {table} among {statements} statements"
        )
    if not settlements:
        raise ParseError(f"Dump yielded no valid rows ({len(skipped)} skipped)", skipped)

    if skipped:
        logger.warning("[parser] {} rows parsed, {} skipped", len(settlements), len(skipped))
    else:
        logger.info("[parser] {} rows parsed", len(settlements))
    return ParseResult(settlements=settlements, skipped=skipped, statements_seen=statements)
