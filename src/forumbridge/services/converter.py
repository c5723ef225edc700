"""BB-code to GitHub Markdown conversion for forum posts."""

import re
from datetime import UTC, datetime, timedelta

from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_QUOTE_PASSES = 10

_FLAGS = re.IGNORECASE
_BLOCK_FLAGS = re.IGNORECASE | re.DOTALL

CODE_BLOCK_PATTERN = re.compile(r"\[code(?:=[^\]]*)?\](.*?)\[/code\]", _BLOCK_FLAGS)
CODE_PLACEHOLDER = "\x00CODE{index}\x00"
# Captures the blockquote markers in front of a placeholder so every restored
# code line stays inside the same quote.
CODE_PLACEHOLDER_PATTERN = re.compile(r"(^(?:> ?)*)?\x00CODE(\d+)\x00", re.MULTILINE)

# A quote body may not contain another quote opener, so the innermost quote
# is always rewritten first.
_QUOTE_BODY = r"((?:(?!\[quote[\]=]).)*?)"
ATTRIBUTED_QUOTE_PATTERN = re.compile(
    r'\[quote=(?:"([^,"\]]+)(?:,[^"\]]*)?"|([^,"\]]+)(?:,[^\]]*)?)\]' + _QUOTE_BODY + r"\[/quote\]",
    _BLOCK_FLAGS,
)
PLAIN_QUOTE_PATTERN = re.compile(r"\[quote\]" + _QUOTE_BODY + r"\[/quote\]", _BLOCK_FLAGS)

QUOTED_URL_PATTERN = re.compile(r'\[url="([^"]+)"\](.*?)\[/url\]', _FLAGS)

FORMATTING_TAGS = (
    (re.compile(r"\[b\](.*?)\[/b\]", _FLAGS), "**", "**"),
    (re.compile(r"\[i\](.*?)\[/i\]", _FLAGS), "*", "*"),
    (re.compile(r"\[u\](.*?)\[/u\]", _FLAGS), "<u>", "</u>"),
    (re.compile(r"\[s\](.*?)\[/s\]", _FLAGS), "~~", "~~"),
    (re.compile(r"\[strike\](.*?)\[/strike\]", _FLAGS), "~~", "~~"),
)

SIMPLE_REPLACEMENTS = (
    # Links
    (re.compile(r"\[url=([^\]]+)\](.*?)\[/url\]", _FLAGS), r"[\2](\1)"),
    (re.compile(r"\[url\](.*?)\[/url\]", _FLAGS), r"[\1](\1)"),
    # Images
    (re.compile(r"\[img\](.*?)\[/img\]", _FLAGS), r"![](\1)"),
    # Spoilers
    (
        re.compile(r'\[spoiler="([^"]+)"\](.*?)\[/spoiler\]', _BLOCK_FLAGS),
        r"<details><summary>\1</summary>\n\n\2\n\n</details>",
    ),
    (
        re.compile(r"\[spoiler\](.*?)\[/spoiler\]", _BLOCK_FLAGS),
        r"<details><summary>Spoiler</summary>\n\n\1\n\n</details>",
    ),
    (re.compile(r"\[ispoiler\](.*?)\[/ispoiler\]", _FLAGS), r"||\1||"),
    # Inline code
    (re.compile(r"\[icode\](.*?)\[/icode\]", _FLAGS), r"`\1`"),
    # Media embeds
    (re.compile(r"\[media=([^\]]+)\](.*?)\[/media\]", _FLAGS), r"[\1](\2)"),
    # Lists
    (re.compile(r"\[\*\]", _FLAGS), "- "),
    (re.compile(r"\[list(?:=[^\]]*)?\]\n?", _FLAGS), "\n"),
    (re.compile(r"\n?\[/list\]", _FLAGS), "\n"),
    # Alignment
    (re.compile(r"\[center\](.*?)\[/center\]", _BLOCK_FLAGS), r"<center>\1</center>"),
    (re.compile(r"\[(left|right|justify)\](.*?)\[/\1\]", _BLOCK_FLAGS), r"\2"),
    # Cosmetic tags
    (re.compile(r"\[color=[^\]]+\](.*?)\[/color\]", _BLOCK_FLAGS), r"\1"),
    (re.compile(r"\[size=[^\]]+\](.*?)\[/size\]", _BLOCK_FLAGS), r"\1"),
    (re.compile(r"\[font=[^\]]+\](.*?)\[/font\]", _BLOCK_FLAGS), r"\1"),
)

# Tag-like tokens not followed by "(", so generated [text](url) links survive.
UNHANDLED_TAG_PATTERN = re.compile(r"\[/?[a-zA-Z][a-zA-Z0-9=_-]*\](?!\()")

BLANK_LINES_PATTERN = re.compile(r"\n{3,}")

MENTION_PATTERN = re.compile(r"@([a-zA-Z0-9_-]*[a-zA-Z]+[a-zA-Z0-9_-]*)\b")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
FENCED_CODE_PATTERN = re.compile(r"(```.*?```)", re.DOTALL)


def _is_attachment_token(token: str) -> bool:
    upper = token.upper()
    return upper.startswith("[ATTACH") or upper == "[/ATTACH]"


class BBCodeConverter:
    """Converts XenForo BB-code into GitHub flavoured Markdown.

    Conversion is a pure function of its input. Unbalanced or unknown tags
    are stripped rather than rejected. Attachment tokens (``[ATTACH...]``)
    are left in place for :class:`~forumbridge.services.attachments.AttachmentLinker`.
    """

    def __init__(self, max_quote_passes: int = DEFAULT_MAX_QUOTE_PASSES) -> None:
        if max_quote_passes < 1:
            raise ValueError("max_quote_passes must be at least 1")
        self._max_quote_passes = max_quote_passes

    def convert(self, bbcode: str) -> str:
        """Convert BB-code markup to Markdown."""
        if not bbcode.strip():
            return ""

        code_blocks: list[str] = []
        result = self._extract_code_blocks(bbcode.replace("\x00", ""), code_blocks)
        result = self._process_quotes(result)
        result = QUOTED_URL_PATTERN.sub(r"[\2](\1)", result)
        for pattern, open_marker, close_marker in FORMATTING_TAGS:
            result = self._process_formatting_tag(result, pattern, open_marker, close_marker)
        for pattern, replacement in SIMPLE_REPLACEMENTS:
            result = pattern.sub(replacement, result)
        result = self._cleanup_unhandled_tags(result)
        result = self._final_cleanup(result)
        return self._restore_code_blocks(result, code_blocks)

    @staticmethod
    def _extract_code_blocks(text: str, code_blocks: list[str]) -> str:
        def replace(match: re.Match[str]) -> str:
            code_blocks.append(match.group(1).strip())
            placeholder = CODE_PLACEHOLDER.format(index=len(code_blocks) - 1)
            return f"\n```\n{placeholder}\n```\n"

        return CODE_BLOCK_PATTERN.sub(replace, text)

    @staticmethod
    def _restore_code_blocks(text: str, code_blocks: list[str]) -> str:
        if not code_blocks:
            return text

        def replace(match: re.Match[str]) -> str:
            prefix = match.group(1) or ""
            index = int(match.group(2))
            if index >= len(code_blocks):
                return match.group(0)
            return prefix + code_blocks[index].replace("\n", "\n" + prefix)

        return CODE_PLACEHOLDER_PATTERN.sub(replace, text)

    def _process_quotes(self, text: str) -> str:
        """Rewrite quotes until nothing changes or the pass limit is hit.

        Nesting deeper than ``max_quote_passes`` is left partially converted.
        """
        result = text
        for _ in range(self._max_quote_passes):
            previous = result
            result = ATTRIBUTED_QUOTE_PATTERN.sub(self._render_attributed_quote, result)
            result = PLAIN_QUOTE_PATTERN.sub(self._render_plain_quote, result)
            if result == previous:
                break
        else:
            if ATTRIBUTED_QUOTE_PATTERN.search(result) or PLAIN_QUOTE_PATTERN.search(result):
                logger.warning(
                    "Quote nesting exceeds pass limit, output left partially converted",
                    max_quote_passes=self._max_quote_passes,
                )
        return result

    @staticmethod
    def _blockquote(content: str) -> str:
        lines = content.strip().split("\n")
        return "".join(f"> {line}\n" for line in lines)

    def _render_attributed_quote(self, match: re.Match[str]) -> str:
        author = (match.group(1) or match.group(2)).strip()
        return f"> **{author} said:**\n" + self._blockquote(match.group(3))

    def _render_plain_quote(self, match: re.Match[str]) -> str:
        return self._blockquote(match.group(1))

    @staticmethod
    def _process_formatting_tag(
        text: str, pattern: re.Pattern[str], open_marker: str, close_marker: str
    ) -> str:
        def replace(match: re.Match[str]) -> str:
            content = match.group(1)
            if not content.strip():
                return ""
            return f"{open_marker}{content}{close_marker}"

        return pattern.sub(replace, text)

    @staticmethod
    def _cleanup_unhandled_tags(text: str) -> str:
        def replace(match: re.Match[str]) -> str:
            token = match.group(0)
            return token if _is_attachment_token(token) else ""

        return UNHANDLED_TAG_PATTERN.sub(replace, text)

    @staticmethod
    def _final_cleanup(text: str) -> str:
        return BLANK_LINES_PATTERN.sub("\n\n", text).strip(" \t")


class MessageFormatter:
    """Turns a forum post into the body of a GitHub discussion or comment."""

    def __init__(self, converter: BBCodeConverter | None = None) -> None:
        self._converter = converter or BBCodeConverter()

    @property
    def converter(self) -> BBCodeConverter:
        return self._converter

    def process_content(self, bbcode: str) -> str:
        """Convert BB-code to Markdown and render @mentions in bold."""
        return convert_mentions(self._converter.convert(bbcode))

    def format_message(self, username: str, post_date: int, thread_id: int, content: str) -> str:
        """Prefix converted content with the original author and timestamp.

        Raises:
            ValueError: If any field is empty or out of range.
        """
        if not username.strip():
            raise ValueError("username cannot be empty")
        if thread_id <= 0:
            raise ValueError("thread_id must be positive")
        if not content.strip():
            raise ValueError("content cannot be empty")
        if post_date < 0:
            raise ValueError("post_date cannot be negative")

        try:
            posted_at = datetime.fromtimestamp(post_date, UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"invalid timestamp: {post_date}") from e
        if posted_at > datetime.now(UTC) + timedelta(days=3650):
            raise ValueError(f"invalid timestamp: {post_date}")

        return (
            "---\n"
            f"Author: **{username.strip()}**\n"
            f"Posted: {posted_at:%Y-%m-%d %H:%M:%S} UTC\n"
            f"Original Thread ID: {thread_id}\n"
            "---\n"
            "\n"
            f"{content.strip()}"
        )


def convert_mentions(markdown: str) -> str:
    """Render ``@username`` as ``**username**``, leaving e-mails and code alone."""
    parts = FENCED_CODE_PATTERN.split(markdown)
    for index in range(0, len(parts), 2):
        parts[index] = _convert_mentions_in_text(parts[index])
    return "".join(parts)


def _convert_mentions_in_text(text: str) -> str:
    email_spans = [m.span() for m in EMAIL_PATTERN.finditer(text)]

    def replace(match: re.Match[str]) -> str:
        start, end = match.span()
        if any(start >= e_start and end <= e_end for e_start, e_end in email_spans):
            return match.group(0)
        return f"**{match.group(1)}**"

    return MENTION_PATTERN.sub(replace, text)
