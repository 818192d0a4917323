"""User substitution rules applied to scene text before normalization.

Two rule kinds are kept in load order: literal pairs and pattern rules.
``RuleStore.apply`` runs every pattern rule first, then every literal.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# JS-style flags accepted in rule files; g/u/y carry no meaning for Python's re
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "g": 0,
    "u": 0,
    "y": 0,
}

_PATTERN_LINE_RE = re.compile(r"^/(.+)/([A-Za-z]*)\s*:\s*(.*)$")
_LITERAL_LINE_RE = re.compile(
    r"""^\s*(?:"([^"]+)"|'([^']+)'|([^:]+?))\s*:\s*(?:"([^"]*)"|'([^']*)'|(.*?))\s*$"""
)
_NAMED_GROUP_RE = re.compile(r"\(\?<(?![=!])")
_BACKREF_RE = re.compile(r"\\k<([A-Za-z_][A-Za-z0-9_]*)>")
_JS_REPLACEMENT_RE = re.compile(r"\$(\$|&|`|'|\d{1,2}|<[^>]*>)")


@dataclass(frozen=True)
class PatternRule:
    pattern: str
    replacement: str = ""
    flags: str = ""


@dataclass(frozen=True)
class RuleSet:
    literals: tuple = ()     # (from, to) pairs
    patterns: tuple = ()     # PatternRule entries

    def __len__(self):
        return len(self.literals) + len(self.patterns)


@dataclass
class CompiledPattern:
    rule: PatternRule
    regex: re.Pattern
    count: int   # 0 replaces all matches, 1 only the first


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _dedupe_literals(pairs: list) -> tuple:
    """Keep each key at its first position with its last value."""
    merged = {}
    for key, value in pairs:
        merged[key] = value
    return tuple(merged.items())


def parse_rules_text(text: str, errors: Optional[list] = None) -> RuleSet:
    """Parse the line form: ``/pattern/flags: replacement`` or ``key: value``.

    Blank lines and ``#`` comments are skipped. Lines matching neither form
    are skipped with a warning; their descriptions are appended to ``errors``
    when a list is given.
    """
    literals = []
    patterns = []
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _PATTERN_LINE_RE.match(line)
        if m:
            patterns.append(PatternRule(m.group(1), _unquote(m.group(3).strip()), m.group(2)))
            continue
        m = _LITERAL_LINE_RE.match(line)
        key = ""
        if m:
            key = m.group(1) or m.group(2) or (m.group(3) or "").strip()
        if not key:
            message = f"line {line_no}: not a rule: {line!r}"
            logger.warning("Skipping rule %s", message)
            if errors is not None:
                errors.append(message)
            continue
        value = m.group(4) if m.group(4) is not None else m.group(5)
        if value is None:
            value = (m.group(6) or "").strip()
        literals.append((key, value))
    return RuleSet(literals=_dedupe_literals(literals), patterns=tuple(patterns))


def parse_rules_compiled(data, errors: Optional[list] = None) -> RuleSet:
    """Parse ``{"kv": [[from, to], ...], "regex": [[pattern, replacement, flags], ...]}``.

    ``kv`` may also be a mapping. Malformed entries are skipped with a warning.
    """

    def _skip(message):
        logger.warning("Skipping compiled rule: %s", message)
        if errors is not None:
            errors.append(message)

    if not isinstance(data, dict):
        _skip(f"expected an object, got {type(data).__name__}")
        return RuleSet()

    kv = data.get("kv") or []
    if isinstance(kv, dict):
        kv = list(kv.items())
    literals = []
    for i, entry in enumerate(kv):
        if (
            isinstance(entry, (list, tuple))
            and len(entry) == 2
            and isinstance(entry[0], str)
            and entry[0]
            and isinstance(entry[1], str)
        ):
            literals.append((entry[0], entry[1]))
        else:
            _skip(f"kv[{i}]: {entry!r}")

    patterns = []
    for i, entry in enumerate(data.get("regex") or []):
        if (
            isinstance(entry, (list, tuple))
            and 1 <= len(entry) <= 3
            and all(isinstance(part, str) for part in entry)
            and entry[0]
        ):
            pattern, replacement, flags = (list(entry) + ["", ""])[:3]
            patterns.append(PatternRule(pattern, replacement, flags))
        else:
            _skip(f"regex[{i}]: {entry!r}")

    return RuleSet(literals=_dedupe_literals(literals), patterns=tuple(patterns))


def load_rules_file(path: str, errors: Optional[list] = None) -> RuleSet:
    """Read a rule file; ``.json`` is the compiled form, anything else the line form."""
    with open(path, encoding="utf-8") as f:
        content = f.read()
    if path.lower().endswith(".json"):
        return parse_rules_compiled(json.loads(content), errors)
    return parse_rules_text(content, errors)


def compile_rules(rule_set: RuleSet) -> dict:
    """The compiled (JSON-ready) form of a rule set."""
    return {
        "kv": [[src, dst] for src, dst in rule_set.literals],
        "regex": [[r.pattern, r.replacement, r.flags] for r in rule_set.patterns],
    }


def translate_pattern(pattern: str, flags: str) -> tuple[str, int, int]:
    """Convert a JS-style pattern to (python pattern, re flags, sub count).

    Raises ValueError for flags Python cannot honor.
    """
    re_flags = 0
    for flag in flags:
        if flag not in _FLAG_MAP:
            raise ValueError(f"unsupported flag {flag!r}")
        re_flags |= _FLAG_MAP[flag]
    pattern = _NAMED_GROUP_RE.sub("(?P<", pattern)
    pattern = _BACKREF_RE.sub(r"(?P=\1)", pattern)
    count = 0 if "g" in flags else 1
    return pattern, re_flags, count


def expand_replacement(template: str, match: re.Match) -> str:
    """Expand ``$1 $& $<name> $$`` the way JS ``String.replace`` does."""

    def _token(m):
        token = m.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        if token == "`":
            return match.string[: match.start()]
        if token == "'":
            return match.string[match.end():]
        if token.startswith("<"):
            name = token[1:-1]
            if name in match.re.groupindex:
                return match.group(name) or ""
            return m.group(0)
        # two-digit references fall back to one digit when the group does not exist
        groups = match.re.groups
        if len(token) == 2 and int(token) > groups:
            head = int(token[0])
            if 1 <= head <= groups:
                return (match.group(head) or "") + token[1]
            return m.group(0)
        index = int(token)
        if 1 <= index <= groups:
            return match.group(index) or ""
        return m.group(0)

    return _JS_REPLACEMENT_RE.sub(_token, template)


@dataclass
class RuleStore:
    """Holds the loaded rule set and applies it to text."""

    rule_set: RuleSet = field(default_factory=RuleSet)
    compiled: list = field(default_factory=list, init=False)
    dropped: list = field(default_factory=list, init=False)   # (PatternRule, reason)

    def __post_init__(self):
        self.load()

    def load(self) -> None:
        """Compile pattern rules, dropping the ones that fail."""
        self.compiled = []
        self.dropped = []
        for rule in self.rule_set.patterns:
            try:
                pattern, re_flags, count = translate_pattern(rule.pattern, rule.flags)
                regex = re.compile(pattern, re_flags)
            except (re.error, ValueError) as e:
                logger.warning("Dropping pattern rule /%s/%s: %s", rule.pattern, rule.flags, e)
                self.dropped.append((rule, str(e)))
                continue
            self.compiled.append(CompiledPattern(rule, regex, count))
        logger.debug(
            "Loaded rules: %d literal, %d pattern, %d dropped",
            len(self.rule_set.literals), len(self.compiled), len(self.dropped),
        )

    def reload(self, rule_set: RuleSet) -> None:
        self.rule_set = rule_set
        self.load()

    def apply(self, text: str) -> str:
        if not text:
            return text
        for entry in self.compiled:
            template = entry.rule.replacement
            text = entry.regex.sub(lambda m: expand_replacement(template, m), text, count=entry.count)
        for src, dst in self.rule_set.literals:
            if src in text:
                text = text.replace(src, dst)
        return text
