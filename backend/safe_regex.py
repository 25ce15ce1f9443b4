import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from .errors import PatternInvalidError, PatternTimeoutError, PatternTooLongError
from .sanitize import escape_regexp

DEFAULT_MAX_PATTERN_LENGTH = 50

# The re module cannot be interrupted, so a match that misses its deadline
# keeps its worker until it finishes on its own.
_match_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="safe-regex")


class SafeRegex:
    """A compiled, case-insensitive pattern whose matches are time-boxed.

    ``regex`` is the plain :class:`re.Pattern`; hand that to the document store
    (PyMongo encodes it as a BSON regular expression). Local matching goes
    through :meth:`search`, :meth:`match`, :meth:`fullmatch` and :meth:`test`,
    which raise :class:`PatternTimeoutError` once ``timeout_ms`` is exceeded.
    """

    def __init__(self, regex: "re.Pattern[str]", timeout_ms: int = 0):
        self.regex = regex
        self.timeout_ms = timeout_ms

    @property
    def pattern(self) -> str:
        return self.regex.pattern

    @property
    def flags(self) -> int:
        return self.regex.flags

    def _run(self, method, text: str):
        if self.timeout_ms <= 0:
            return method(text)

        future = _match_executor.submit(method, text)
        try:
            return future.result(timeout=self.timeout_ms / 1000)
        except FutureTimeoutError:
            future.cancel()
            raise PatternTimeoutError() from None

    def search(self, text: str) -> Optional["re.Match[str]"]:
        return self._run(self.regex.search, text)

    def match(self, text: str) -> Optional["re.Match[str]"]:
        return self._run(self.regex.match, text)

    def fullmatch(self, text: str) -> Optional["re.Match[str]"]:
        return self._run(self.regex.fullmatch, text)

    def test(self, text: str) -> bool:
        return self.search(text) is not None

    def __repr__(self) -> str:
        return f"SafeRegex({self.pattern!r}, timeout_ms={self.timeout_ms})"


def compile_safe_regex(
    pattern: str,
    flags: int = re.IGNORECASE,
    *,
    max_length: int = DEFAULT_MAX_PATTERN_LENGTH,
    timeout_ms: int = 0,
    already_escaped: bool = False,
) -> SafeRegex:
    if len(pattern) > max_length:
        raise PatternTooLongError()

    source = pattern if already_escaped else escape_regexp(pattern)

    try:
        compiled = re.compile(source, flags | re.IGNORECASE)
    except re.error as exc:
        raise PatternInvalidError() from exc

    return SafeRegex(compiled, timeout_ms=timeout_ms)
