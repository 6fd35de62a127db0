#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

html_to_markdown.py

Convert flashcard HTML into clean Markdown for the vault.

Card HTML mixes ordinary markup with flashcard-specific syntax, so the
conversion runs as a fixed sequence of stages. The order matters: each
stage consumes its syntax before a later, more generic stage could
misread it.

1. Remove <style> and <script> elements
2. Rewrite clozes {{cN::answer}} / {{cN::answer::hint}} to ==answer==
   (hint dropped) and strip type-answer placeholders
3. Rewrite <img>/<video>/<audio> sources to ![[basename]] embeds
4. Rewrite legacy [sound:file] references to ![[file]] embeds
5. Structural HTML -> Markdown (headings, emphasis, lists, GFM tables,
   fenced code, inline code, links, line breaks) by walking the parsed
   node tree with MarkdownVisitor
6. Un-escape any embed that ended up backslash-escaped
7. Normalize whitespace (no run of 3+ newlines, trimmed ends)

Stage 5 never escapes Markdown punctuation, so running it again on its
own output leaves that output unchanged.

Usage:
    from ankivault.html_to_markdown import ContentConverter

    result = ContentConverter().convert('<p>{{c1::Paris}} <img src="a%20b.png"></p>')
    result.markdown      # '==Paris== ![[a b.png]]'
    result.media_files   # frozenset({'a b.png'})
"""

from __future__ import annotations

import re
from typing import Optional, Set
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from ankivault.errors import HTMLConversionError
from ankivault.models import ConversionResult


# ============================================================================
# Patterns
# ============================================================================

# Innermost cloze first: the answer may not itself open another cloze
CLOZE_RE = re.compile(
    r"\{\{c\d+::((?:(?!\{\{c\d+::).)*?)(?:::((?:(?!\{\{c\d+::).)*?))?\}\}",
    re.DOTALL,
)
HIGHLIGHT_RE = re.compile(r"==(.+?)==", re.DOTALL)
TYPE_ANSWER_RE = re.compile(r"\{\{type:[^}]*\}\}|\[\[type:[^\]]*\]\]")
SOUND_RE = re.compile(r"\[sound:([^\]]+)\]")
ESCAPED_EMBED_RE = re.compile(r"(?:\\!|!)(?:\\\[|\[){2}([^\n]+?)(?:\\\]|\]){2}")

EXTERNAL_SCHEMES = {"http", "https", "data"}
MEDIA_TAGS = ["img", "video", "audio"]

# Block boundaries while walking the tree, resolved to real newlines later
LINE_BREAK = "\x02"
PARAGRAPH_BREAK = "\x03"
BREAK_RUN_RE = re.compile(r"[ \n\x02\x03]*[\x02\x03][ \n\x02\x03]*")

INLINE_WS_RE = re.compile(r"[ \t\r\f\v\xa0]+")
LIST_ITEM_RE = re.compile(r"(?:[-*+]|\d+[.)])(?: |$)")


# ============================================================================
# Stage 1-2: string-level rewrites
# ============================================================================

def strip_non_rendered(html: str) -> str:
    """Remove <style> and <script> elements entirely."""
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup.find_all(['style', 'script']):
        tag.decompose()
    return str(soup)


def rewrite_clozes(html: str) -> str:
    """
    Rewrite cloze deletions to ==answer== highlights.

    Nested clozes are resolved innermost first; the highlight of an inner
    cloze is folded into the enclosing one.

    Example:
        >>> rewrite_clozes("Water is {{c1::H2O::chemical formula}}")
        'Water is ==H2O=='
    """
    html = TYPE_ANSWER_RE.sub("", html)

    nested = False

    def replace(match: re.Match) -> str:
        answer = match.group(1)
        if nested:
            answer = HIGHLIGHT_RE.sub(r"\1", answer)
        return f"=={answer.strip()}=="

    while True:
        rewritten = CLOZE_RE.sub(replace, html)
        if rewritten == html:
            return rewritten
        html = rewritten
        nested = True


# ============================================================================
# Stage 3-4: media references
# ============================================================================

def _extract_filename_from_src(src: str) -> str:
    """
    Basename of a local media source, URL-decoded.

    Example:
        >>> _extract_filename_from_src("media/my%20image.jpg")
        'my image.jpg'
    """
    path = unquote(src.strip())
    return path.replace('\\', '/').rsplit('/', 1)[-1].strip()


def _is_external(src: str) -> bool:
    return urlparse(src).scheme.lower() in EXTERNAL_SCHEMES


def _media_source(tag: Tag) -> str:
    src = tag.get('src') or ''
    if not src and tag.name in ('video', 'audio'):
        source = tag.find('source', src=True, recursive=False)
        if source is not None:
            src = source.get('src') or ''
    return src.strip()


def rewrite_media_tags(soup: BeautifulSoup, media: Set[str]) -> None:
    """
    Replace <img>, <video> and <audio> elements with ![[basename]] embeds.

    Local basenames are added to ``media``. Remote (http/https/data)
    sources become ordinary Markdown images and are not registered.
    Children of video/audio other than <source>/<track> are kept.
    """
    for tag in soup.find_all(MEDIA_TAGS):
        src = _media_source(tag)

        replacement = ""
        if src and _is_external(src):
            alt = (tag.get('alt') or '').strip()
            replacement = f"![{alt}]({src})"
        elif src:
            name = _extract_filename_from_src(src)
            if name:
                media.add(name)
                replacement = f"![[{name}]]"

        if replacement:
            tag.insert_before(NavigableString(replacement))

        for child in tag.find_all(['source', 'track'], recursive=False):
            child.decompose()

        if tag.name == 'img':
            tag.decompose()
        else:
            tag.unwrap()


def rewrite_sound_tags(soup: BeautifulSoup, media: Set[str]) -> None:
    """Replace [sound:file] references in text with ![[file]] embeds."""

    def replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if not name:
            return ""
        media.add(name)
        return f"![[{name}]]"

    for text in soup.find_all(string=SOUND_RE):
        if isinstance(text, PreformattedString):
            continue
        text.replace_with(NavigableString(SOUND_RE.sub(replace, str(text))))


# ============================================================================
# Stage 5: structural conversion
# ============================================================================

def _resolve_breaks(text: str) -> str:
    """Turn block boundary markers (and the whitespace around them) into newlines."""

    def replace(match: re.Match) -> str:
        run = match.group(0)
        if PARAGRAPH_BREAK in run or run.count("\n") >= 2:
            return "\n\n"
        return "\n"

    return BREAK_RUN_RE.sub(replace, text)


def _single_line(text: str) -> str:
    return re.sub(r"\s*\n\s*", " ", _resolve_breaks(text)).strip()


class MarkdownVisitor:
    """
    Recursive visitor over a BeautifulSoup tree emitting Markdown.

    One ``visit_<tag>`` method per element kind; elements without one
    contribute their children only. Block elements wrap their output in
    break markers that _resolve_breaks() later turns into newlines, so
    adjacent blocks never stack up blank lines.
    """

    def visit(self, node) -> str:
        if isinstance(node, PreformattedString):
            # Comments, doctypes, CDATA
            return ""
        if isinstance(node, NavigableString):
            return self._visit_string(node)
        if isinstance(node, Tag):
            method = getattr(self, f"visit_{node.name}", None)
            if method is not None:
                return method(node)
            return self.visit_children(node)
        return ""

    def visit_children(self, node: Tag) -> str:
        return "".join(self.visit(child) for child in node.children)

    def _visit_string(self, node: NavigableString) -> str:
        lines = str(node).split("\n")
        out = [INLINE_WS_RE.sub(" ", lines[0])]
        in_list = bool(LIST_ITEM_RE.match(out[0].lstrip()))

        for line in lines[1:]:
            body = line.lstrip(" \t")
            indent = line[:len(line) - len(body)]
            body = INLINE_WS_RE.sub(" ", body).lstrip(" ")

            # Indentation only survives inside Markdown list text
            if not body:
                in_list = False
            elif LIST_ITEM_RE.match(body):
                in_list = True
                body = indent + body
            elif in_list and indent:
                body = indent + body
            else:
                in_list = False
            out.append(body)

        for index in range(len(out) - 1):
            out[index] = out[index].rstrip(" ")
        return "\n".join(out)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _block(content: str, brk: str = PARAGRAPH_BREAK) -> str:
        if not content.strip(" \n" + LINE_BREAK + PARAGRAPH_BREAK):
            return ""
        return f"{brk}{content}{brk}"

    def _emphasis(self, node: Tag, mark: str) -> str:
        content = self.visit_children(node)
        core = content.strip()
        if not core:
            return content
        lead = content[:len(content) - len(content.lstrip())]
        trail = content[len(content.rstrip()):]
        return f"{lead}{mark}{core}{mark}{trail}"

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def visit_p(self, node: Tag) -> str:
        return self._block(self.visit_children(node))

    def visit_div(self, node: Tag) -> str:
        return self._block(self.visit_children(node), LINE_BREAK)

    visit_section = visit_article = visit_header = visit_footer = visit_div
    visit_figure = visit_center = visit_dl = visit_dt = visit_dd = visit_div

    def _heading(self, node: Tag) -> str:
        level = int(node.name[1])
        text = _single_line(self.visit_children(node))
        if not text:
            return ""
        return self._block(f"{'#' * level} {text}")

    visit_h1 = visit_h2 = visit_h3 = visit_h4 = visit_h5 = visit_h6 = _heading

    def visit_br(self, node: Tag) -> str:
        return "\n"

    def visit_hr(self, node: Tag) -> str:
        return self._block("---")

    def visit_blockquote(self, node: Tag) -> str:
        inner = _resolve_breaks(self.visit_children(node)).strip()
        if not inner:
            return ""
        quoted = "\n".join(f"> {line}" if line else ">" for line in inner.split("\n"))
        return self._block(quoted)

    def visit_pre(self, node: Tag) -> str:
        for br in node.find_all('br'):
            br.replace_with("\n")
        code = node.get_text().strip("\n")
        if not code.strip():
            return ""

        language = ""
        code_tag = node.find('code')
        if code_tag is not None:
            for cls in code_tag.get('class') or []:
                if cls.startswith('language-') or cls.startswith('lang-'):
                    language = cls.split('-', 1)[1]
                    break

        fence = "```"
        while fence in code:
            fence += "`"
        return self._block(f"{fence}{language}\n{code}\n{fence}")

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def _list(self, node: Tag, ordered: bool) -> str:
        start = 1
        if ordered:
            try:
                start = int(node.get('start', 1))
            except (TypeError, ValueError):
                start = 1

        items = []
        for index, li in enumerate(node.find_all('li', recursive=False)):
            marker = f"{start + index}. " if ordered else "- "
            content = _resolve_breaks(self.visit_children(li)).strip()
            content = re.sub(r"\n{2,}", "\n", content)
            lines = content.split("\n")
            indent = " " * len(marker)
            rest = "".join(f"\n{indent}{line}" if line else "\n" for line in lines[1:])
            items.append(f"{marker}{lines[0]}{rest}")

        if not items:
            return self.visit_children(node)
        return self._block("\n".join(items))

    def visit_ul(self, node: Tag) -> str:
        return self._list(node, ordered=False)

    def visit_ol(self, node: Tag) -> str:
        return self._list(node, ordered=True)

    def visit_li(self, node: Tag) -> str:
        # Only reached for <li> outside a list
        content = _resolve_breaks(self.visit_children(node)).strip()
        return self._block(f"- {content}", LINE_BREAK) if content else ""

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _cell(self, cell: Tag) -> str:
        return _single_line(self.visit_children(cell)).replace("|", "\\|")

    def visit_table(self, node: Tag) -> str:
        rows = []
        for tr in node.find_all('tr'):
            if tr.find_parent('table') is not node:
                continue
            cells = [self._cell(c) for c in tr.find_all(['th', 'td'], recursive=False)]
            if cells:
                rows.append(cells)

        if not rows:
            return ""

        width = max(len(r) for r in rows)
        rows = [r + [""] * (width - len(r)) for r in rows]

        def render(cells) -> str:
            return "|" + "|".join(f" {c} " if c else " " for c in cells) + "|"

        lines = [render(rows[0]), render(["---"] * width)]
        lines.extend(render(r) for r in rows[1:])
        return self._block("\n".join(lines))

    # ------------------------------------------------------------------
    # Inline
    # ------------------------------------------------------------------

    def visit_b(self, node: Tag) -> str:
        return self._emphasis(node, "**")

    visit_strong = visit_b

    def visit_i(self, node: Tag) -> str:
        return self._emphasis(node, "*")

    visit_em = visit_i

    def visit_s(self, node: Tag) -> str:
        return self._emphasis(node, "~~")

    visit_strike = visit_del = visit_s

    def visit_mark(self, node: Tag) -> str:
        return self._emphasis(node, "==")

    def visit_code(self, node: Tag) -> str:
        text = node.get_text()
        if not text:
            return ""
        if "`" in text:
            return f"`` {text} ``"
        return f"`{text}`"

    def visit_a(self, node: Tag) -> str:
        text = _single_line(self.visit_children(node))
        href = (node.get('href') or '').strip()
        if not href or href.lower().startswith('javascript:'):
            return text
        if not text:
            text = href
        if " " in href:
            href = f"<{href}>"
        return f"[{text}]({href})"


# ============================================================================
# Stage 6-7: cleanup
# ============================================================================

def unescape_embeds(markdown: str) -> str:
    """Remove backslash escapes from ![[...]] embeds."""

    def replace(match: re.Match) -> str:
        if "\\" not in match.group(0):
            return match.group(0)
        name = re.sub(r"\\(.)", r"\1", match.group(1))
        return f"![[{name}]]"

    return ESCAPED_EMBED_RE.sub(replace, markdown)


def _cleanup_markdown(markdown: str) -> str:
    """
    Normalize whitespace in converted Markdown.

    Removes trailing whitespace from lines, collapses runs of 3+ newlines
    to a single blank line, and trims the whole result.
    """
    if not markdown:
        return ""

    markdown = markdown.replace('\r\n', '\n')

    lines = [line.rstrip() for line in markdown.split('\n')]
    markdown = '\n'.join(lines)

    markdown = re.sub(r'\n{3,}', '\n\n', markdown)

    return markdown.strip()


# ============================================================================
# Public API
# ============================================================================

def convert_html_to_markdown(html: str) -> str:
    """
    Structural HTML to Markdown conversion only (stages 5 and 7).

    No flashcard syntax is interpreted. Feeding the output back in
    returns it unchanged.
    """
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, 'html.parser')
    return _cleanup_markdown(_resolve_breaks(MarkdownVisitor().visit(soup)))


class ContentConverter:
    """
    HTML fragment -> ConversionResult (Markdown + referenced media basenames).

    Stateless; one instance can be shared by any number of worker threads.
    """

    def convert(self, html: Optional[str]) -> ConversionResult:
        """
        Run the full conversion pipeline on one HTML fragment.

        Args:
            html: Card side HTML (field values already substituted)

        Returns:
            ConversionResult

        Raises:
            HTMLConversionError: If conversion fails unexpectedly
        """
        if not html or not html.strip():
            return ConversionResult(markdown="", media_files=frozenset())

        try:
            media: Set[str] = set()

            html = strip_non_rendered(html)
            html = rewrite_clozes(html)

            soup = BeautifulSoup(html, 'html.parser')
            rewrite_media_tags(soup, media)
            rewrite_sound_tags(soup, media)

            markdown = _resolve_breaks(MarkdownVisitor().visit(soup))
            markdown = unescape_embeds(markdown)
            markdown = _cleanup_markdown(markdown)

            return ConversionResult(markdown=markdown, media_files=frozenset(media))

        except Exception as e:
            raise HTMLConversionError(
                message="Failed to convert HTML to markdown",
                suggestion="Check that the card HTML is well-formed",
                context={
                    "html_length": len(html),
                    "html_preview": html[:200] + "..." if len(html) > 200 else html,
                },
                cause=e,
            )
