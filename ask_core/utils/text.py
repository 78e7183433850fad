"""文本工具函数。"""

MAX_TITLE_LENGTH = 50

_ELLIPSIS = "..."


def normalize_whitespace(s: str) -> str:
    """把所有空白（含换行）折叠为单个空格，并去掉首尾空白。"""

    return " ".join(s.split())


def truncate(s: str, max_len: int = MAX_TITLE_LENGTH) -> str:
    """规范化空白后截断到 max_len 个字符，被截断时以 "..." 结尾（计入长度）。"""

    s = normalize_whitespace(s)
    if len(s) <= max_len:
        return s
    return s[: max(max_len - len(_ELLIPSIS), 0)] + _ELLIPSIS
