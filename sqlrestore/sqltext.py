"""
T-SQL text helpers used before pattern matching and execution.

Comments are blanked rather than removed so that offsets and line numbers of
the remaining text stay identical to the original script.
"""

import re
from typing import Dict, List, Mapping, Tuple


GO_LINE = re.compile(r'^\s*GO(?:\s+(\d+))?\s*$', re.IGNORECASE)
SQLCMD_VARIABLE = re.compile(r'\$\((\w+)\)')


def _lines(text: str) -> List[str]:
    return re.findall(r'[^\n]*\n|[^\n]+', text)


def _blank(text: str) -> str:
    return ''.join(ch if ch in '\r\n' else ' ' for ch in text)


def _mask(sql: str, mask_literals: bool) -> str:
    """Blank out comments (and optionally literal contents) keeping the layout."""
    out: List[str] = []
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ''

        if ch == '-' and nxt == '-':
            end = sql.find('\n', i)
            if end == -1:
                end = n
            out.append(_blank(sql[i:end]))
            i = end
            continue

        if ch == '/' and nxt == '*':
            # T-SQL block comments nest
            depth = 0
            j = i
            while j < n:
                if sql.startswith('/*', j):
                    depth += 1
                    j += 2
                elif sql.startswith('*/', j):
                    depth -= 1
                    j += 2
                    if depth == 0:
                        break
                else:
                    j += 1
            out.append(_blank(sql[i:j]))
            i = j
            continue

        if ch in ("'", '"', '['):
            close = ']' if ch == '[' else ch
            j = i + 1
            while j < n:
                if sql[j] == close:
                    if j + 1 < n and sql[j + 1] == close:
                        j += 2
                        continue
                    break
                if ch == '[' and sql[j] == '\n':
                    break
                j += 1
            if ch == '[' and (j >= n or sql[j] != ']'):
                # Unterminated bracket: treat '[' as plain text
                out.append(ch)
                i += 1
                continue
            end = min(j + 1, n)
            if mask_literals:
                out.append(ch + ''.join(c if c in '\r\n' else 'x' for c in sql[i + 1:end - 1]) + sql[end - 1:end])
            else:
                out.append(sql[i:end])
            i = end
            continue

        out.append(ch)
        i += 1
    return ''.join(out)


def strip_comments(sql: str) -> str:
    """Blank out -- line comments and /* */ block comments."""
    if not sql:
        return ''
    return _mask(sql, mask_literals=False)


def split_batches(sql: str) -> List[Tuple[str, int]]:
    """Split a script on GO separators.

    Returns (batch text, repeat count) pairs. A GO line may carry leading or
    trailing whitespace, an inline -- comment and a repeat count. GO inside a
    comment or string literal is not a separator.
    """
    masked = _lines(_mask(sql, mask_literals=True))
    original = _lines(sql)
    masked_comments = _lines(strip_comments(sql))

    batches: List[Tuple[str, int]] = []
    current: List[str] = []
    current_masked: List[str] = []

    def flush(count: int):
        if ''.join(current_masked).strip():
            batches.append((''.join(current).strip('\r\n'), count))
        current.clear()
        current_masked.clear()

    for line, line_masked, line_code in zip(original, masked, masked_comments):
        match = GO_LINE.match(line_masked)
        if match:
            flush(int(match.group(1)) if match.group(1) else 1)
            continue
        current.append(line)
        current_masked.append(line_code)
    flush(1)
    return batches


def substitute_variables(sql: str, variables: Mapping[str, str]) -> str:
    """Replace $(Name) tokens; unknown names are left untouched."""
    if not variables:
        return sql
    lookup: Dict[str, str] = {k.lower(): v for k, v in variables.items()}

    def repl(m: re.Match) -> str:
        value = lookup.get(m.group(1).lower())
        return m.group(0) if value is None else value

    return SQLCMD_VARIABLE.sub(repl, sql)


def escape_literal(value: str) -> str:
    """Escape a value for use inside a N'...' literal."""
    return value.replace("'", "''")
