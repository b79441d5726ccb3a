import re

from bs4 import BeautifulSoup

_SKIP_TAGS = ["script", "style", "noscript", "svg", "head", "iframe", "nav", "footer"]
_BLOCK_TAGS = [
    "p", "div", "section", "article", "br", "li", "tr",
    "h1", "h2", "h3", "h4", "h5", "h6", "pre", "blockquote",
]


def collapse_whitespace(text: str) -> str:
    """Collapse runs of spaces within lines and cap blank lines at one."""
    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def html_to_text(html: str) -> str:
    """Convert an HTML page to readable plain text, dropping non-content elements."""
    soup = BeautifulSoup(html, "lxml")

    for tag in soup.find_all(_SKIP_TAGS):
        tag.decompose()

    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")

    body = soup.find("body")
    return collapse_whitespace((body or soup).get_text())


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n[truncated at {max_chars:,} of {len(text):,} characters]"
