"""
词法分析 - 将插件脚本切分为 Token。

支持数字、字符串、模板字符串、正则字面量、标识符和运算符，
跳过 // 与 /* */ 注释，并记录 Token 前是否有换行（用于自动分号）。
"""

from typing import List, Optional, Tuple, Union

from .values import ScriptSyntaxError

__all__ = [
    "Token",
    "tokenize",
    "KEYWORDS",
]

KEYWORDS = frozenset({
    "var", "let", "const", "function", "return", "if", "else", "for", "while",
    "do", "break", "continue", "throw", "try", "catch", "finally", "switch",
    "case", "default", "new", "delete", "typeof", "instanceof", "in", "void",
    "this", "null", "true", "false", "async", "await", "class",
})

# 允许在其后出现正则字面量的关键字
_REGEX_PREFIX_KEYWORDS = frozenset({
    "return", "typeof", "instanceof", "in", "of", "new", "delete", "void",
    "throw", "case", "do", "else", "await",
})

_PUNCTUATORS = (
    ">>>=", "...", "===", "!==", "**=", "<<=", ">>=", ">>>", "&&=", "||=", "??=",
    "=>", "==", "!=", "<=", ">=", "&&", "||", "??", "?.", "++", "--", "+=", "-=",
    "*=", "/=", "%=", "&=", "|=", "^=", "**", "<<", ">>",
    "{", "}", "(", ")", "[", "]", ";", ",", "<", ">", "+", "-", "*", "/", "%",
    "&", "|", "^", "!", "~", "?", ":", "=", ".",
)

_SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0",
}

TemplatePart = Tuple[str, str]  # ("str", 文本) 或 ("expr", 表达式源码)


class Token:
    __slots__ = ("type", "value", "line", "nl_before")

    def __init__(self, type_: str, value: Union[str, float, int, list, tuple], line: int, nl_before: bool) -> None:
        self.type = type_
        self.value = value
        self.line = line
        self.nl_before = nl_before

    def is_punct(self, value: str) -> bool:
        return self.type == "punct" and self.value == value

    def is_name(self, value: Optional[str] = None) -> bool:
        return self.type == "name" and (value is None or self.value == value)

    def __repr__(self) -> str:
        return f"Token({self.type}, {self.value!r}, line={self.line})"


class _Lexer:
    def __init__(self, source: str, line: int = 1) -> None:
        self.src = source
        self.pos = 0
        self.line = line
        self.tokens: List[Token] = []

    def error(self, message: str) -> ScriptSyntaxError:
        return ScriptSyntaxError(f"{message} (第 {self.line} 行)")

    def _regex_allowed(self) -> bool:
        if not self.tokens:
            return True
        prev = self.tokens[-1]
        if prev.type == "punct":
            return prev.value not in (")", "]", "}")
        if prev.type == "name":
            return prev.value in _REGEX_PREFIX_KEYWORDS
        return False

    def run(self) -> List[Token]:
        src = self.src
        length = len(src)
        nl_before = False
        while self.pos < length:
            ch = src[self.pos]
            if ch == "\n":
                self.line += 1
                nl_before = True
                self.pos += 1
                continue
            if ch in " \t\r\f\v\u00a0\ufeff\u2028\u2029":
                self.pos += 1
                continue
            if src.startswith("//", self.pos):
                end = src.find("\n", self.pos)
                self.pos = length if end < 0 else end
                continue
            if src.startswith("/*", self.pos):
                end = src.find("*/", self.pos + 2)
                if end < 0:
                    raise self.error("注释未闭合")
                comment = src[self.pos:end]
                if "\n" in comment:
                    self.line += comment.count("\n")
                    nl_before = True
                self.pos = end + 2
                continue

            start_line = self.line
            if ch.isdigit() or (ch == "." and self.pos + 1 < length and src[self.pos + 1].isdigit()):
                token = Token("num", self._read_number(), start_line, nl_before)
            elif ch in "\"'":
                token = Token("str", self._read_string(ch), start_line, nl_before)
            elif ch == "`":
                token = Token("template", self._read_template(), start_line, nl_before)
            elif ch.isalpha() or ch in "_$" or ord(ch) > 127:
                token = Token("name", self._read_name(), start_line, nl_before)
            elif ch == "/" and self._regex_allowed():
                token = Token("regex", self._read_regex(), start_line, nl_before)
            else:
                token = Token("punct", self._read_punct(), start_line, nl_before)
            self.tokens.append(token)
            nl_before = False

        self.tokens.append(Token("eof", "", self.line, True))
        return self.tokens

    def _read_name(self) -> str:
        start = self.pos
        src = self.src
        while self.pos < len(src) and (src[self.pos].isalnum() or src[self.pos] in "_$" or ord(src[self.pos]) > 127):
            self.pos += 1
        return src[start:self.pos]

    def _read_number(self) -> Union[int, float]:
        src = self.src
        start = self.pos
        if src[start] == "0" and start + 1 < len(src) and src[start + 1] in "xXbBoO":
            base = {"x": 16, "b": 2, "o": 8}[src[start + 1].lower()]
            self.pos += 2
            while self.pos < len(src) and (src[self.pos].isalnum() or src[self.pos] == "_"):
                self.pos += 1
            digits = src[start + 2:self.pos].replace("_", "")
            try:
                return int(digits, base)
            except ValueError:
                raise self.error(f"非法数字: {src[start:self.pos]}")
        while self.pos < len(src) and (src[self.pos].isdigit() or src[self.pos] == "_"):
            self.pos += 1
        is_float = False
        if self.pos < len(src) and src[self.pos] == ".":
            is_float = True
            self.pos += 1
            while self.pos < len(src) and (src[self.pos].isdigit() or src[self.pos] == "_"):
                self.pos += 1
        if self.pos < len(src) and src[self.pos] in "eE":
            nxt = self.pos + 1
            if nxt < len(src) and src[nxt] in "+-":
                nxt += 1
            if nxt < len(src) and src[nxt].isdigit():
                is_float = True
                self.pos = nxt
                while self.pos < len(src) and src[self.pos].isdigit():
                    self.pos += 1
        text = src[start:self.pos].replace("_", "")
        if self.pos < len(src) and (src[self.pos].isalpha() or src[self.pos] in "_$"):
            raise self.error(f"非法数字: {src[start:self.pos + 1]}")
        if is_float:
            value = float(text)
            return int(value) if value.is_integer() and "e" not in text.lower() and abs(value) < 2 ** 53 else value
        return int(text)

    def _read_escape(self) -> str:
        src = self.src
        ch = src[self.pos]
        self.pos += 1
        if ch in _SIMPLE_ESCAPES:
            return _SIMPLE_ESCAPES[ch]
        if ch == "x":
            hex_text = src[self.pos:self.pos + 2]
            self.pos += 2
            try:
                return chr(int(hex_text, 16))
            except ValueError:
                raise self.error("非法的 \\x 转义")
        if ch == "u":
            if self.pos < len(src) and src[self.pos] == "{":
                end = src.find("}", self.pos)
                if end < 0:
                    raise self.error("非法的 \\u 转义")
                hex_text = src[self.pos + 1:end]
                self.pos = end + 1
            else:
                hex_text = src[self.pos:self.pos + 4]
                self.pos += 4
            try:
                code = int(hex_text, 16)
            except ValueError:
                raise self.error("非法的 \\u 转义")
            # 组合 UTF-16 代理对
            if 0xD800 <= code <= 0xDBFF and src.startswith("\\u", self.pos):
                try:
                    low = int(src[self.pos + 2:self.pos + 6], 16)
                except ValueError:
                    low = 0
                if 0xDC00 <= low <= 0xDFFF:
                    self.pos += 6
                    code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
            return chr(code)
        if ch == "\r":
            if self.pos < len(src) and src[self.pos] == "\n":
                self.pos += 1
            self.line += 1
            return ""
        if ch == "\n":
            self.line += 1
            return ""
        return ch

    def _read_string(self, quote: str) -> str:
        src = self.src
        self.pos += 1
        parts: List[str] = []
        while True:
            if self.pos >= len(src):
                raise self.error("字符串未闭合")
            ch = src[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(parts)
            if ch == "\n":
                raise self.error("字符串未闭合")
            if ch == "\\":
                self.pos += 1
                if self.pos >= len(src):
                    raise self.error("字符串未闭合")
                parts.append(self._read_escape())
                continue
            parts.append(ch)
            self.pos += 1

    def _skip_expression_source(self) -> int:
        """从 ${ 之后扫描到匹配的 }，返回 } 的位置。"""
        src = self.src
        depth = 0
        i = self.pos
        while i < len(src):
            ch = src[i]
            if ch in "\"'":
                j = i + 1
                while j < len(src) and src[j] != ch:
                    j += 2 if src[j] == "\\" else 1
                i = j + 1
                continue
            if ch == "`":
                j = i + 1
                nested = 0
                while j < len(src):
                    if src[j] == "\\":
                        j += 2
                        continue
                    if src.startswith("${", j):
                        nested += 1
                        j += 2
                        continue
                    if src[j] == "}" and nested:
                        nested -= 1
                    elif src[j] == "`" and not nested:
                        break
                    j += 1
                i = j + 1
                continue
            if ch == "\n":
                self.line += 1
            if ch == "{":
                depth += 1
            elif ch == "}":
                if depth == 0:
                    return i
                depth -= 1
            i += 1
        raise self.error("模板字符串表达式未闭合")

    def _read_template(self) -> List[TemplatePart]:
        src = self.src
        self.pos += 1
        parts: List[TemplatePart] = []
        buf: List[str] = []
        while True:
            if self.pos >= len(src):
                raise self.error("模板字符串未闭合")
            ch = src[self.pos]
            if ch == "`":
                self.pos += 1
                parts.append(("str", "".join(buf)))
                return parts
            if ch == "\\":
                self.pos += 1
                buf.append(self._read_escape())
                continue
            if src.startswith("${", self.pos):
                parts.append(("str", "".join(buf)))
                buf = []
                self.pos += 2
                end = self._skip_expression_source()
                parts.append(("expr", src[self.pos:end]))
                self.pos = end + 1
                continue
            if ch == "\n":
                self.line += 1
            buf.append(ch)
            self.pos += 1

    def _read_regex(self) -> Tuple[str, str]:
        src = self.src
        self.pos += 1
        start = self.pos
        in_class = False
        while True:
            if self.pos >= len(src) or src[self.pos] == "\n":
                raise self.error("正则表达式未闭合")
            ch = src[self.pos]
            if ch == "\\":
                self.pos += 2
                continue
            if ch == "[":
                in_class = True
            elif ch == "]":
                in_class = False
            elif ch == "/" and not in_class:
                break
            self.pos += 1
        pattern = src[start:self.pos]
        self.pos += 1
        flag_start = self.pos
        while self.pos < len(src) and src[self.pos].isalpha():
            self.pos += 1
        return pattern, src[flag_start:self.pos]

    def _read_punct(self) -> str:
        src = self.src
        for punct in _PUNCTUATORS:
            if src.startswith(punct, self.pos):
                # a?.5:b 中的 ?. 不是可选链
                if punct == "?." and self.pos + 2 < len(src) and src[self.pos + 2].isdigit():
                    continue
                self.pos += len(punct)
                return punct
        raise self.error(f"无法识别的字符 {src[self.pos]!r}")


def tokenize(source: str, line: int = 1) -> List[Token]:
    return _Lexer(source, line).run()
