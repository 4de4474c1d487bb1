"""
security/sql_guard.py

Token-based inspection of user-supplied SQL: WHERE-clause fragments from
the table browser and full statements from the query editor.

Non-developer summary:
----------------------
Instead of searching for scary words anywhere in the text (which would
wrongly block a column called "updated_at" or the string 'drop me'), we
split the SQL into pieces the way PostgreSQL would: words, numbers,
quoted strings, comments and punctuation. Only real keywords outside of
strings count. Each inspect_* function returns None when the text is
acceptable, or a short reason when it must be rejected.
"""

from __future__ import annotations

import re
from typing import Iterator, List, NamedTuple, Optional

# Token kinds
WORD = "WORD"
NUMBER = "NUMBER"
HEX = "HEX"
STRING = "STRING"
QUOTED_IDENT = "QUOTED_IDENT"
DOLLAR = "DOLLAR"
LINE_COMMENT = "LINE_COMMENT"
BLOCK_COMMENT = "BLOCK_COMMENT"
SEMICOLON = "SEMICOLON"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
OPERATOR = "OPERATOR"
UNTERMINATED = "UNTERMINATED"
UNTERMINATED_COMMENT = "UNTERMINATED_COMMENT"
OTHER = "OTHER"

COMMENT_KINDS = frozenset({LINE_COMMENT, BLOCK_COMMENT, UNTERMINATED_COMMENT})

# Order matters: comments before operators, prefixed strings before words,
# complete literals before their unterminated forms.
_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<LINE_COMMENT>--[^\n]*)
    | (?P<BLOCK_COMMENT>/\*.*?\*/)
    | (?P<UNTERMINATED_COMMENT>/\*)
    | (?P<DOLLAR>\$(?P<tag>[A-Za-z_][A-Za-z_0-9]*|)\$.*?\$(?P=tag)\$)
    | (?P<ESTRING>[Ee]'(?:[^'\\]|\\.|'')*')
    | (?P<STRING>(?:[NnBbXxUu]&?)?'(?:[^']|'')*')
    | (?P<QUOTED_IDENT>(?:[Uu]&)?"(?:[^"]|"")*")
    | (?P<UNTERMINATED>(?:[EeNnBbXxUu]&?)?'|(?:[Uu]&)?"|\$(?:[A-Za-z_][A-Za-z_0-9]*)?\$)
    | (?P<HEX>0[xX][0-9A-Fa-f]+)
    | (?P<NUMBER>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
    | (?P<PARAM>\$\d+)
    | (?P<WORD>[^\W\d][\w$]*)
    | (?P<SEMICOLON>;)
    | (?P<LPAREN>\()
    | (?P<RPAREN>\))
    | (?P<OPERATOR>::|<=|>=|<>|!=|\|\||[-+*/<>=~!@#%^&|`?,.:\[\]])
    """,
    re.VERBOSE | re.DOTALL,
)

# Keywords that may never appear as bare tokens inside a WHERE fragment.
WHERE_FORBIDDEN = frozenset(
    {
        "DROP",
        "ALTER",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "INSERT",
        "UPDATE",
        "DELETE",
        "UNION",
        "CREATE",
        "EXEC",
        "EXECUTE",
    }
)

QUERY_EXEC_WORDS = frozenset({"EXEC", "EXECUTE"})
QUERY_PROC_WORDS = frozenset({"SP_EXECUTESQL", "XP_CMDSHELL"})
QUERY_DROP_TARGETS = frozenset({"DATABASE", "TABLE", "SCHEMA"})

_SCRIPT_TAG_RE = re.compile(r"<\s*/?\s*script\b", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


class Token(NamedTuple):
    kind: str
    value: str
    pos: int

    @property
    def upper(self) -> str:
        return self.value.upper()


def tokenize(sql: str) -> Iterator[Token]:
    """Yield tokens of `sql`; whitespace is dropped, unknown characters become OTHER."""
    pos = 0
    end = len(sql)
    while pos < end:
        m = _TOKEN_RE.match(sql, pos)
        if m is None:
            yield Token(OTHER, sql[pos], pos)
            pos += 1
            continue
        kind = m.lastgroup
        if kind != "ws":
            if kind == "ESTRING":
                kind = STRING
            elif kind == "PARAM":
                kind = OPERATOR
            yield Token(kind, m.group(), pos)
        pos = m.end()


def significant(tokens: List[Token]) -> List[Token]:
    """Tokens with comments removed."""
    return [t for t in tokens if t.kind not in COMMENT_KINDS]


def inspect_where_clause(clause: Optional[str]) -> Optional[str]:
    """
    Return a rejection reason for a WHERE fragment, or None when it is safe.

    Blank input is safe. Subqueries and hex literals are allowed.
    """
    if clause is None or not clause.strip():
        return None

    depth = 0
    for tok in tokenize(clause):
        if tok.kind == UNTERMINATED:
            return "unterminated literal"
        if tok.kind in COMMENT_KINDS:
            return "comments are not allowed"
        if tok.kind == SEMICOLON:
            return "statement terminator is not allowed"
        if tok.kind == LPAREN:
            depth += 1
        elif tok.kind == RPAREN:
            depth -= 1
            if depth < 0:
                return "unbalanced parentheses"
        elif tok.kind == WORD and tok.upper in WHERE_FORBIDDEN:
            return f"keyword {tok.upper} is not allowed"
    if depth != 0:
        return "unbalanced parentheses"
    return None


def normalize_whitespace(sql: str) -> str:
    return _WS_RE.sub(" ", sql).strip()


def inspect_sql_query(query: Optional[str]) -> Optional[str]:
    """
    Return a rejection reason for a query-editor statement list, or None.

    Several SELECT statements separated by ';' are fine; comments are
    ignored. Destructive DDL and procedure execution are refused.
    """
    if query is None:
        return None
    text = normalize_whitespace(query)
    if not text:
        return None
    if _SCRIPT_TAG_RE.search(text):
        return "script tags are not allowed"

    # Tokenize the raw text: collapsing newlines would hide code after a -- comment
    tokens = list(tokenize(query))
    for tok in tokens:
        if tok.kind in (UNTERMINATED, UNTERMINATED_COMMENT):
            return "unterminated literal"

    words = significant(tokens)
    for i, tok in enumerate(words):
        if tok.kind != WORD:
            continue
        word = tok.upper
        if word in QUERY_EXEC_WORDS:
            return f"{word} statements are not allowed"
        if word in QUERY_PROC_WORDS:
            return f"{tok.value} is not allowed"
        if word == "TRUNCATE":
            return "TRUNCATE is not allowed"
        if word == "DROP" and i + 1 < len(words):
            nxt = words[i + 1]
            if nxt.kind == WORD and nxt.upper in QUERY_DROP_TARGETS:
                return f"DROP {nxt.upper} is not allowed"
    return None


def classify_statement(query: Optional[str]) -> str:
    """DQL / DML / DDL / DCL / OTHER from the first keyword (used for logging)."""
    if not query:
        return "OTHER"
    for tok in significant(list(tokenize(query))):
        if tok.kind == LPAREN:
            continue
        if tok.kind != WORD:
            return "OTHER"
        word = tok.upper
        if word in ("SELECT", "WITH", "SHOW", "EXPLAIN", "VALUES", "TABLE"):
            return "DQL"
        if word in ("INSERT", "UPDATE", "DELETE", "MERGE", "COPY"):
            return "DML"
        if word in ("CREATE", "ALTER", "DROP", "TRUNCATE", "COMMENT"):
            return "DDL"
        if word in ("GRANT", "REVOKE"):
            return "DCL"
        return "OTHER"
    return "OTHER"
