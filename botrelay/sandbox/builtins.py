"""
脚本内建对象：Math、JSON、Date、Promise 等全局对象，
以及字符串、数组、数字等值类型上的方法表。

所有方法以 raw 形式实现：fn(interp, this, args)。
"""

import asyncio
import math
import random
import re
import time
import unicodedata
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, unquote

from .values import (
    ERROR_TYPES,
    UNDEFINED,
    HostConstructor,
    HostFunction,
    JSDate,
    JSFunction,
    JSObject,
    JSPromise,
    JSRegExp,
    JSThrow,
    is_callable,
    is_nullish,
    is_number,
    json_parse,
    json_stringify,
    make_error,
    number_to_string,
    power,
    strict_equals,
    to_boolean,
    to_number,
    to_property_key,
    to_string,
)

__all__ = [
    "MatchResult",
    "STRING_METHODS",
    "ARRAY_METHODS",
    "NUMBER_METHODS",
    "BOOLEAN_METHODS",
    "DATE_METHODS",
    "REGEXP_METHODS",
    "PROMISE_METHODS",
    "FUNCTION_METHODS",
    "OBJECT_METHODS",
    "create_globals",
    "encode_uri_component",
    "decode_uri_component",
    "parse_date",
]


class MatchResult(list):
    """正则匹配结果：数组本身外加 index / input / groups 属性。"""

    __slots__ = ("props",)

    def __init__(self, items: List[Any], props: Dict[str, Any]) -> None:
        super().__init__(items)
        self.props = props


def _arg(args: List[Any], index: int) -> Any:
    return args[index] if index < len(args) else UNDEFINED


def _type_error(message: str) -> JSThrow:
    return JSThrow(make_error("TypeError", message))


def _range_error(message: str) -> JSThrow:
    return JSThrow(make_error("RangeError", message))


def _to_integer(value: Any, default: int = 0) -> int:
    if value is UNDEFINED:
        return default
    number = to_number(value)
    if isinstance(number, float):
        if math.isnan(number):
            return 0
        if math.isinf(number):
            return 2 ** 53 if number > 0 else -(2 ** 53)
        return int(number)
    return number


def _relative_index(value: Any, length: int, default: int) -> int:
    index = _to_integer(value, default)
    if index < 0:
        return max(length + index, 0)
    return min(index, length)


def _require_callable(fn: Any, label: str = "callback") -> None:
    if not is_callable(fn):
        raise _type_error(f"{to_string(fn)} is not a function ({label})")


def _this_string(this: Any) -> str:
    if is_nullish(this):
        raise _type_error("String.prototype method called on null or undefined")
    return to_string(this)


def _same_value_zero(left: Any, right: Any) -> bool:
    if isinstance(left, float) and isinstance(right, float) and math.isnan(left) and math.isnan(right):
        return True
    return strict_equals(left, right)


# ═══════════════════════════════════════════════════════════════════
#                               正则辅助
# ═══════════════════════════════════════════════════════════════════


def _match_result(match: "re.Match", text: str) -> MatchResult:
    groups = [UNDEFINED if g is None else g for g in match.groups()]
    named = match.groupdict()
    props = {
        "index": match.start(),
        "input": text,
        "groups": JSObject({k: (UNDEFINED if v is None else v) for k, v in named.items()}) if named else UNDEFINED,
    }
    return MatchResult([match.group(0)] + groups, props)


def _regexp_exec(regexp: JSRegExp, text: str) -> Optional["re.Match"]:
    if regexp.is_global or "y" in regexp.flags:
        if regexp.last_index > len(text):
            regexp.last_index = 0
            return None
        match = regexp.compiled.search(text, regexp.last_index)
        if match is None:
            regexp.last_index = 0
            return None
        end = match.end()
        regexp.last_index = end if end > match.start() else end + 1
        return match
    return regexp.compiled.search(text)


_REPLACEMENT_PATTERN = re.compile(r"\$(\$|&|`|'|\d{1,2}|<[^>]*>)")


def _expand_replacement(template: str, match: "re.Match", text: str) -> str:
    def substitute(m: "re.Match") -> str:
        token = m.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        if token == "`":
            return text[:match.start()]
        if token == "'":
            return text[match.end():]
        if token.startswith("<"):
            name = token[1:-1]
            try:
                return match.group(name) or ""
            except IndexError:
                return ""
        index = int(token)
        if 0 < index <= (match.re.groups if match.re else 0):
            return match.group(index) or ""
        return m.group(0)

    return _REPLACEMENT_PATTERN.sub(substitute, template)


async def _replace(interp: Any, text: str, pattern: Any, replacement: Any, replace_all: bool) -> str:
    if isinstance(pattern, JSRegExp):
        regexp = pattern.compiled
        count = 0 if (pattern.is_global or replace_all) else 1
    else:
        regexp = re.compile(re.escape(to_string(pattern)))
        count = 0 if replace_all else 1

    pieces: List[str] = []
    last = 0
    replaced = 0
    for match in regexp.finditer(text):
        if count and replaced >= count:
            break
        pieces.append(text[last:match.start()])
        if is_callable(replacement):
            groups = [UNDEFINED if g is None else g for g in match.groups()]
            result = await interp.call(replacement, UNDEFINED, [match.group(0), *groups, match.start(), text])
            pieces.append(to_string(result))
        else:
            pieces.append(_expand_replacement(to_string(replacement), match, text))
        last = match.end()
        replaced += 1
    pieces.append(text[last:])
    if isinstance(pattern, JSRegExp) and pattern.is_global:
        pattern.last_index = 0
    return "".join(pieces)


def _to_regexp(value: Any, flags: str = "") -> JSRegExp:
    if isinstance(value, JSRegExp):
        return value
    return JSRegExp(re.escape(to_string(value)) if value is not UNDEFINED else "(?:)", flags)


# ═══════════════════════════════════════════════════════════════════
#                               字符串方法
# ═══════════════════════════════════════════════════════════════════


def _s_char_at(interp, this, args):
    text = _this_string(this)
    index = _to_integer(_arg(args, 0))
    return text[index] if 0 <= index < len(text) else ""


def _s_char_code_at(interp, this, args):
    text = _this_string(this)
    index = _to_integer(_arg(args, 0))
    return ord(text[index]) if 0 <= index < len(text) else math.nan


def _s_index_of(interp, this, args):
    text = _this_string(this)
    return text.find(to_string(_arg(args, 0)), max(_to_integer(_arg(args, 1)), 0))


def _s_last_index_of(interp, this, args):
    text = _this_string(this)
    return text.rfind(to_string(_arg(args, 0)))


def _s_includes(interp, this, args):
    text = _this_string(this)
    needle = _arg(args, 0)
    if isinstance(needle, JSRegExp):
        raise _type_error("First argument to String.prototype.includes must not be a regular expression")
    return to_string(needle) in text[max(_to_integer(_arg(args, 1)), 0):]


def _s_starts_with(interp, this, args):
    text = _this_string(this)
    return text.startswith(to_string(_arg(args, 0)), max(_to_integer(_arg(args, 1)), 0))


def _s_ends_with(interp, this, args):
    text = _this_string(this)
    end = _arg(args, 1)
    if end is not UNDEFINED:
        text = text[:max(_to_integer(end), 0)]
    return text.endswith(to_string(_arg(args, 0)))


def _s_slice(interp, this, args):
    text = _this_string(this)
    start = _relative_index(_arg(args, 0), len(text), 0)
    end = _relative_index(_arg(args, 1), len(text), len(text))
    return text[start:end] if start < end else ""


def _s_substring(interp, this, args):
    text = _this_string(this)
    start = min(max(_to_integer(_arg(args, 0)), 0), len(text))
    end = min(max(_to_integer(_arg(args, 1), len(text)), 0), len(text))
    if start > end:
        start, end = end, start
    return text[start:end]


def _s_substr(interp, this, args):
    text = _this_string(this)
    start = _relative_index(_arg(args, 0), len(text), 0)
    length = _to_integer(_arg(args, 1), len(text) - start)
    if length <= 0:
        return ""
    return text[start:start + length]


def _s_upper(interp, this, args):
    return _this_string(this).upper()


def _s_lower(interp, this, args):
    return _this_string(this).lower()


def _s_trim(interp, this, args):
    return _this_string(this).strip()


def _s_trim_start(interp, this, args):
    return _this_string(this).lstrip()


def _s_trim_end(interp, this, args):
    return _this_string(this).rstrip()


def _pad(text: str, args: List[Any], at_start: bool) -> str:
    target = _to_integer(_arg(args, 0))
    fill = _arg(args, 1)
    fill = " " if fill is UNDEFINED else to_string(fill)
    if target <= len(text) or not fill:
        return text
    needed = target - len(text)
    padding = (fill * (needed // len(fill) + 1))[:needed]
    return padding + text if at_start else text + padding


def _s_pad_start(interp, this, args):
    return _pad(_this_string(this), args, True)


def _s_pad_end(interp, this, args):
    return _pad(_this_string(this), args, False)


def _s_repeat(interp, this, args):
    count = to_number(_arg(args, 0))
    if isinstance(count, float) and math.isnan(count):
        count = 0
    if count < 0 or math.isinf(count):
        raise _range_error(f"Invalid count value: {number_to_string(count)}")
    text = _this_string(this)
    if len(text) * int(count) > 10_000_000:
        raise _range_error("Invalid string length")
    return text * int(count)


def _s_split(interp, this, args):
    text = _this_string(this)
    separator = _arg(args, 0)
    limit = _arg(args, 1)
    limit = None if limit is UNDEFINED else _to_integer(limit) & 0xFFFFFFFF
    if separator is UNDEFINED:
        parts: List[Any] = [text]
    elif isinstance(separator, JSRegExp):
        if not text:
            parts = [] if separator.compiled.match(text) else [text]
        else:
            parts = []
            last = 0
            for match in separator.compiled.finditer(text):
                # 空匹配不在首尾切分
                if match.start() == match.end() and match.start() in (0, len(text)):
                    continue
                parts.append(text[last:match.start()])
                parts.extend(UNDEFINED if g is None else g for g in match.groups())
                last = match.end()
            parts.append(text[last:])
    else:
        sep = to_string(separator)
        if sep == "":
            parts = list(text)
        else:
            parts = text.split(sep)
    if limit is not None:
        parts = parts[:limit]
    return parts


async def _s_replace(interp, this, args):
    return await _replace(interp, _this_string(this), _arg(args, 0), _arg(args, 1), False)


async def _s_replace_all(interp, this, args):
    pattern = _arg(args, 0)
    if isinstance(pattern, JSRegExp) and not pattern.is_global:
        raise _type_error("replaceAll must be called with a global RegExp")
    return await _replace(interp, _this_string(this), pattern, _arg(args, 1), True)


def _s_match(interp, this, args):
    text = _this_string(this)
    regexp = _arg(args, 0)
    regexp = regexp if isinstance(regexp, JSRegExp) else JSRegExp(to_string(regexp) if regexp is not UNDEFINED else "(?:)")
    if regexp.is_global:
        matches = [m.group(0) for m in regexp.compiled.finditer(text)]
        regexp.last_index = 0
        return matches or None
    match = regexp.compiled.search(text)
    return _match_result(match, text) if match else None


def _s_match_all(interp, this, args):
    text = _this_string(this)
    regexp = _arg(args, 0)
    if isinstance(regexp, JSRegExp) and not regexp.is_global:
        raise _type_error("matchAll must be called with a global RegExp")
    regexp = _to_regexp(regexp, "g")
    return [_match_result(m, text) for m in regexp.compiled.finditer(text)]


def _s_search(interp, this, args):
    text = _this_string(this)
    regexp = _arg(args, 0)
    regexp = regexp if isinstance(regexp, JSRegExp) else JSRegExp(to_string(regexp))
    match = regexp.compiled.search(text)
    return match.start() if match else -1


def _s_concat(interp, this, args):
    return _this_string(this) + "".join(to_string(a) for a in args)


def _s_at(interp, this, args):
    text = _this_string(this)
    index = _to_integer(_arg(args, 0))
    if index < 0:
        index += len(text)
    return text[index] if 0 <= index < len(text) else UNDEFINED


def _s_locale_compare(interp, this, args):
    text = _this_string(this)
    other = to_string(_arg(args, 0))
    return (text > other) - (text < other)


def _s_normalize(interp, this, args):
    form = _arg(args, 0)
    form = "NFC" if form is UNDEFINED else to_string(form)
    if form not in ("NFC", "NFD", "NFKC", "NFKD"):
        raise _range_error("The normalization form should be one of NFC, NFD, NFKC, NFKD.")
    return unicodedata.normalize(form, _this_string(this))


def _s_to_string(interp, this, args):
    return _this_string(this)


STRING_METHODS: Dict[str, HostFunction] = {
    name: HostFunction(fn, name, raw=True)
    for name, fn in {
        "charAt": _s_char_at,
        "charCodeAt": _s_char_code_at,
        "codePointAt": _s_char_code_at,
        "indexOf": _s_index_of,
        "lastIndexOf": _s_last_index_of,
        "includes": _s_includes,
        "startsWith": _s_starts_with,
        "endsWith": _s_ends_with,
        "slice": _s_slice,
        "substring": _s_substring,
        "substr": _s_substr,
        "toUpperCase": _s_upper,
        "toLowerCase": _s_lower,
        "toLocaleUpperCase": _s_upper,
        "toLocaleLowerCase": _s_lower,
        "trim": _s_trim,
        "trimStart": _s_trim_start,
        "trimLeft": _s_trim_start,
        "trimEnd": _s_trim_end,
        "trimRight": _s_trim_end,
        "padStart": _s_pad_start,
        "padEnd": _s_pad_end,
        "repeat": _s_repeat,
        "split": _s_split,
        "replace": _s_replace,
        "replaceAll": _s_replace_all,
        "match": _s_match,
        "matchAll": _s_match_all,
        "search": _s_search,
        "concat": _s_concat,
        "at": _s_at,
        "localeCompare": _s_locale_compare,
        "normalize": _s_normalize,
        "toString": _s_to_string,
        "valueOf": _s_to_string,
    }.items()
}


# ═══════════════════════════════════════════════════════════════════
#                               数组方法
# ═══════════════════════════════════════════════════════════════════


def _this_list(this: Any) -> list:
    if not isinstance(this, list):
        raise _type_error("Array.prototype method called on non-array")
    return this


def _a_push(interp, this, args):
    items = _this_list(this)
    items.extend(args)
    return len(items)


def _a_pop(interp, this, args):
    items = _this_list(this)
    return items.pop() if items else UNDEFINED


def _a_shift(interp, this, args):
    items = _this_list(this)
    return items.pop(0) if items else UNDEFINED


def _a_unshift(interp, this, args):
    items = _this_list(this)
    items[0:0] = args
    return len(items)


def _a_slice(interp, this, args):
    items = _this_list(this)
    start = _relative_index(_arg(args, 0), len(items), 0)
    end = _relative_index(_arg(args, 1), len(items), len(items))
    return items[start:end]


def _a_splice(interp, this, args):
    items = _this_list(this)
    start = _relative_index(_arg(args, 0), len(items), 0)
    if len(args) < 2:
        count = len(items) - start
    else:
        count = min(max(_to_integer(args[1]), 0), len(items) - start)
    removed = items[start:start + count]
    items[start:start + count] = args[2:]
    return removed


def _a_concat(interp, this, args):
    result = list(_this_list(this))
    for item in args:
        if isinstance(item, list):
            result.extend(item)
        else:
            result.append(item)
    return result


def _a_join(interp, this, args):
    items = _this_list(this)
    separator = _arg(args, 0)
    separator = "," if separator is UNDEFINED else to_string(separator)
    return separator.join("" if is_nullish(item) else to_string(item) for item in items)


def _a_reverse(interp, this, args):
    items = _this_list(this)
    items.reverse()
    return items


def _a_index_of(interp, this, args):
    items = _this_list(this)
    target = _arg(args, 0)
    for index in range(max(_relative_index(_arg(args, 1), len(items), 0), 0), len(items)):
        if strict_equals(items[index], target):
            return index
    return -1


def _a_last_index_of(interp, this, args):
    items = _this_list(this)
    target = _arg(args, 0)
    for index in range(len(items) - 1, -1, -1):
        if strict_equals(items[index], target):
            return index
    return -1


def _a_includes(interp, this, args):
    items = _this_list(this)
    target = _arg(args, 0)
    return any(_same_value_zero(item, target) for item in items)


async def _iterate_callback(interp, this, args):
    items = _this_list(this)
    callback = _arg(args, 0)
    _require_callable(callback)
    this_arg = _arg(args, 1)
    index = 0
    while index < len(items):
        yield index, items[index], await interp.call(callback, this_arg, [items[index], index, items])
        index += 1


async def _a_for_each(interp, this, args):
    async for _ in _iterate_callback(interp, this, args):
        pass
    return UNDEFINED


async def _a_map(interp, this, args):
    return [result async for _, _, result in _iterate_callback(interp, this, args)]


async def _a_filter(interp, this, args):
    return [item async for _, item, result in _iterate_callback(interp, this, args) if to_boolean(result)]


async def _a_find(interp, this, args):
    async for _, item, result in _iterate_callback(interp, this, args):
        if to_boolean(result):
            return item
    return UNDEFINED


async def _a_find_index(interp, this, args):
    async for index, _, result in _iterate_callback(interp, this, args):
        if to_boolean(result):
            return index
    return -1


async def _a_find_last(interp, this, args):
    items = _this_list(this)
    callback = _arg(args, 0)
    _require_callable(callback)
    for index in range(len(items) - 1, -1, -1):
        if to_boolean(await interp.call(callback, UNDEFINED, [items[index], index, items])):
            return items[index]
    return UNDEFINED


async def _a_find_last_index(interp, this, args):
    items = _this_list(this)
    callback = _arg(args, 0)
    _require_callable(callback)
    for index in range(len(items) - 1, -1, -1):
        if to_boolean(await interp.call(callback, UNDEFINED, [items[index], index, items])):
            return index
    return -1


async def _a_some(interp, this, args):
    async for _, _, result in _iterate_callback(interp, this, args):
        if to_boolean(result):
            return True
    return False


async def _a_every(interp, this, args):
    async for _, _, result in _iterate_callback(interp, this, args):
        if not to_boolean(result):
            return False
    return True


async def _reduce(interp, items: list, args: List[Any], indices: range):
    callback = _arg(args, 0)
    _require_callable(callback)
    indices = list(indices)
    if len(args) >= 2:
        accumulator = args[1]
    else:
        if not indices:
            raise _type_error("Reduce of empty array with no initial value")
        accumulator = items[indices.pop(0)]
    for index in indices:
        if index < len(items):
            accumulator = await interp.call(callback, UNDEFINED, [accumulator, items[index], index, items])
    return accumulator


async def _a_reduce(interp, this, args):
    items = _this_list(this)
    return await _reduce(interp, items, args, range(len(items)))


async def _a_reduce_right(interp, this, args):
    items = _this_list(this)
    return await _reduce(interp, items, args, range(len(items) - 1, -1, -1))


def _flatten(items: list, depth: int) -> list:
    result = []
    for item in items:
        if isinstance(item, list) and depth > 0:
            result.extend(_flatten(item, depth - 1))
        else:
            result.append(item)
    return result


def _a_flat(interp, this, args):
    return _flatten(_this_list(this), _to_integer(_arg(args, 0), 1))


async def _a_flat_map(interp, this, args):
    return _flatten(await _a_map(interp, this, args), 1)


def _a_fill(interp, this, args):
    items = _this_list(this)
    start = _relative_index(_arg(args, 1), len(items), 0)
    end = _relative_index(_arg(args, 2), len(items), len(items))
    for index in range(start, end):
        items[index] = _arg(args, 0)
    return items


def _a_at(interp, this, args):
    items = _this_list(this)
    index = _to_integer(_arg(args, 0))
    if index < 0:
        index += len(items)
    return items[index] if 0 <= index < len(items) else UNDEFINED


def _default_compare(left: Any, right: Any) -> int:
    if left is UNDEFINED:
        return 0 if right is UNDEFINED else 1
    if right is UNDEFINED:
        return -1
    a, b = to_string(left), to_string(right)
    return (a > b) - (a < b)


async def _merge_sort(interp, items: list, compare: Any) -> list:
    if len(items) <= 1:
        return items
    middle = len(items) // 2
    left = await _merge_sort(interp, items[:middle], compare)
    right = await _merge_sort(interp, items[middle:], compare)
    merged = []
    i = j = 0
    while i < len(left) and j < len(right):
        if compare is UNDEFINED:
            order = _default_compare(left[i], right[j])
        elif left[i] is UNDEFINED or right[j] is UNDEFINED:
            order = _default_compare(left[i], right[j])
        else:
            order = to_number(await interp.call(compare, UNDEFINED, [left[i], right[j]]))
            if isinstance(order, float) and math.isnan(order):
                order = 0
        if order > 0:
            merged.append(right[j])
            j += 1
        else:
            merged.append(left[i])
            i += 1
    merged.extend(left[i:])
    merged.extend(right[j:])
    return merged


async def _a_sort(interp, this, args):
    items = _this_list(this)
    compare = _arg(args, 0)
    if compare is not UNDEFINED:
        _require_callable(compare, "comparator")
    items[:] = await _merge_sort(interp, list(items), compare)
    return items


def _a_keys(interp, this, args):
    return list(range(len(_this_list(this))))


def _a_values(interp, this, args):
    return list(_this_list(this))


def _a_entries(interp, this, args):
    return [[index, item] for index, item in enumerate(_this_list(this))]


ARRAY_METHODS: Dict[str, HostFunction] = {
    name: HostFunction(fn, name, raw=True)
    for name, fn in {
        "push": _a_push,
        "pop": _a_pop,
        "shift": _a_shift,
        "unshift": _a_unshift,
        "slice": _a_slice,
        "splice": _a_splice,
        "concat": _a_concat,
        "join": _a_join,
        "reverse": _a_reverse,
        "indexOf": _a_index_of,
        "lastIndexOf": _a_last_index_of,
        "includes": _a_includes,
        "forEach": _a_for_each,
        "map": _a_map,
        "filter": _a_filter,
        "find": _a_find,
        "findIndex": _a_find_index,
        "findLast": _a_find_last,
        "findLastIndex": _a_find_last_index,
        "some": _a_some,
        "every": _a_every,
        "reduce": _a_reduce,
        "reduceRight": _a_reduce_right,
        "flat": _a_flat,
        "flatMap": _a_flat_map,
        "fill": _a_fill,
        "at": _a_at,
        "sort": _a_sort,
        "keys": _a_keys,
        "values": _a_values,
        "entries": _a_entries,
        "toString": lambda interp, this, args: _a_join(interp, this, []),
    }.items()
}


# ═══════════════════════════════════════════════════════════════════
#                          数字 / 布尔 / 函数 / 对象
# ═══════════════════════════════════════════════════════════════════


def _n_to_fixed(interp, this, args):
    value = to_number(this)
    digits = _to_integer(_arg(args, 0))
    if not 0 <= digits <= 100:
        raise _range_error("toFixed() digits argument must be between 0 and 100")
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return number_to_string(value)
    if abs(value) >= 1e21:
        return number_to_string(value)
    quantized = Decimal(value).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    text = f"{quantized:f}"
    return "0" + text[2:] if text.startswith("-0") and not any(c in "123456789" for c in text) else text


_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _n_to_string(interp, this, args):
    value = to_number(this)
    radix = _arg(args, 0)
    radix = 10 if radix is UNDEFINED else _to_integer(radix)
    if not 2 <= radix <= 36:
        raise _range_error("toString() radix must be between 2 and 36")
    if radix == 10 or (isinstance(value, float) and (math.isnan(value) or math.isinf(value))):
        return number_to_string(value)
    integer = int(value)
    if integer == 0:
        return "0"
    sign = "-" if integer < 0 else ""
    integer = abs(integer)
    digits = []
    while integer:
        integer, rem = divmod(integer, radix)
        digits.append(_DIGITS[rem])
    return sign + "".join(reversed(digits))


def _n_to_locale_string(interp, this, args):
    value = to_number(this)
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return number_to_string(value)
    if isinstance(value, int) or float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


NUMBER_METHODS: Dict[str, HostFunction] = {
    "toFixed": HostFunction(_n_to_fixed, "toFixed", raw=True),
    "toString": HostFunction(_n_to_string, "toString", raw=True),
    "toLocaleString": HostFunction(_n_to_locale_string, "toLocaleString", raw=True),
    "valueOf": HostFunction(lambda interp, this, args: this, "valueOf", raw=True),
}

BOOLEAN_METHODS: Dict[str, HostFunction] = {
    "toString": HostFunction(lambda interp, this, args: to_string(this), "toString", raw=True),
    "valueOf": HostFunction(lambda interp, this, args: this, "valueOf", raw=True),
}


async def _f_call(interp, this, args):
    return await interp.call(this, _arg(args, 0), list(args[1:]))


async def _f_apply(interp, this, args):
    call_args = _arg(args, 1)
    return await interp.call(this, _arg(args, 0), list(call_args) if isinstance(call_args, list) else [])


def _f_bind(interp, this, args):
    target = this
    _require_callable(target, "bind")
    bound_this = _arg(args, 0)
    bound_args = list(args[1:])

    async def bound(interp_, _this, call_args):
        return await interp_.call(target, bound_this, bound_args + list(call_args))

    return HostFunction(bound, f"bound {getattr(target, 'name', '')}", raw=True)


FUNCTION_METHODS: Dict[str, HostFunction] = {
    "call": HostFunction(_f_call, "call", raw=True),
    "apply": HostFunction(_f_apply, "apply", raw=True),
    "bind": HostFunction(_f_bind, "bind", raw=True),
    "toString": HostFunction(lambda interp, this, args: to_string(this), "toString", raw=True),
}


def _o_has_own_property(interp, this, args):
    if isinstance(this, dict):
        return to_property_key(_arg(args, 0)) in this
    return False


OBJECT_METHODS: Dict[str, HostFunction] = {
    "hasOwnProperty": HostFunction(_o_has_own_property, "hasOwnProperty", raw=True),
    "toString": HostFunction(lambda interp, this, args: to_string(this), "toString", raw=True),
}


# ═══════════════════════════════════════════════════════════════════
#                               Date
# ═══════════════════════════════════════════════════════════════════


def _local_ms(year: int, month: int, day: int = 1, hour: int = 0, minute: int = 0,
              second: int = 0, millisecond: int = 0, utc: bool = False) -> float:
    year += month // 12
    month %= 12
    try:
        base = datetime(year, month + 1, 1, tzinfo=timezone.utc if utc else None)
        moment = base + timedelta(days=day - 1, hours=hour, minutes=minute,
                                  seconds=second, milliseconds=millisecond)
        return round(moment.timestamp() * 1000)
    except (ValueError, OverflowError, OSError):
        return math.nan


_LOCAL_DATE_PATTERN = re.compile(
    r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})"
    r"(?:[ T](\d{1,2}):(\d{2})(?::(\d{2})(?:\.(\d{1,3}))?)?)?$"
)
_ISO_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date(text: str) -> float:
    text = text.strip()
    match = _LOCAL_DATE_PATTERN.match(text)
    if match:
        year, month, day, hour, minute, second, frac = match.groups()
        return _local_ms(
            int(year), int(month) - 1, int(day), int(hour or 0), int(minute or 0),
            int(second or 0), int((frac or "0").ljust(3, "0")), utc=bool(_ISO_DATE_ONLY.match(text)),
        )
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return math.nan
    return round(dt.timestamp() * 1000)


def _this_date(this: Any) -> JSDate:
    if not isinstance(this, JSDate):
        raise _type_error("this is not a Date object.")
    return this


def _date_getter(extract: Callable[[datetime, JSDate], Any], utc: bool = False):
    def getter(interp, this, args):
        date = _this_date(this)
        if not date.valid:
            return math.nan
        return extract(date.utc() if utc else date.local(), date)
    return getter


def _date_setter(field: str):
    order = ("year", "month", "day", "hour", "minute", "second", "millisecond")

    def setter(interp, this, args):
        date = _this_date(this)
        dt = date.local() if date.valid else datetime.fromtimestamp(0)
        parts = {
            "year": dt.year, "month": dt.month - 1, "day": dt.day, "hour": dt.hour,
            "minute": dt.minute, "second": dt.second, "millisecond": int(date.ms % 1000) if date.valid else 0,
        }
        start = order.index(field)
        for offset, value in enumerate(args[:3 if field in ("year", "hour") else 2]):
            if start + offset < len(order):
                number = to_number(value)
                if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
                    date.ms = math.nan
                    return math.nan
                parts[order[start + offset]] = int(number)
        date.ms = _local_ms(**parts)
        return date.ms
    return setter


def _set_time(interp, this, args):
    date = _this_date(this)
    date.ms = to_number(_arg(args, 0))
    return date.ms


def _format_locale(dt: datetime) -> str:
    return f"{dt.year}/{dt.month}/{dt.day} {dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}"


def _date_string(fn: Callable[[JSDate], str]):
    def method(interp, this, args):
        date = _this_date(this)
        if not date.valid:
            return "Invalid Date"
        return fn(date)
    return method


def _to_iso(interp, this, args):
    date = _this_date(this)
    if not date.valid:
        raise _range_error("Invalid time value")
    return date.iso()


DATE_METHODS: Dict[str, HostFunction] = {
    name: HostFunction(fn, name, raw=True)
    for name, fn in {
        "getFullYear": _date_getter(lambda dt, d: dt.year),
        "getMonth": _date_getter(lambda dt, d: dt.month - 1),
        "getDate": _date_getter(lambda dt, d: dt.day),
        "getDay": _date_getter(lambda dt, d: (dt.weekday() + 1) % 7),
        "getHours": _date_getter(lambda dt, d: dt.hour),
        "getMinutes": _date_getter(lambda dt, d: dt.minute),
        "getSeconds": _date_getter(lambda dt, d: dt.second),
        "getMilliseconds": _date_getter(lambda dt, d: int(d.ms % 1000)),
        "getUTCFullYear": _date_getter(lambda dt, d: dt.year, utc=True),
        "getUTCMonth": _date_getter(lambda dt, d: dt.month - 1, utc=True),
        "getUTCDate": _date_getter(lambda dt, d: dt.day, utc=True),
        "getUTCDay": _date_getter(lambda dt, d: (dt.weekday() + 1) % 7, utc=True),
        "getUTCHours": _date_getter(lambda dt, d: dt.hour, utc=True),
        "getUTCMinutes": _date_getter(lambda dt, d: dt.minute, utc=True),
        "getUTCSeconds": _date_getter(lambda dt, d: dt.second, utc=True),
        "getTime": _date_getter(lambda dt, d: d.ms),
        "valueOf": _date_getter(lambda dt, d: d.ms),
        "getTimezoneOffset": _date_getter(
            lambda dt, d: -int(dt.astimezone().utcoffset().total_seconds() // 60)
        ),
        "setFullYear": _date_setter("year"),
        "setMonth": _date_setter("month"),
        "setDate": _date_setter("day"),
        "setHours": _date_setter("hour"),
        "setMinutes": _date_setter("minute"),
        "setSeconds": _date_setter("second"),
        "setMilliseconds": _date_setter("millisecond"),
        "setTime": _set_time,
        "toISOString": _to_iso,
        "toJSON": _date_string(lambda d: d.iso()),
        "toString": lambda interp, this, args: to_string(_this_date(this)),
        "toDateString": _date_string(lambda d: d.local().strftime("%a %b %d %Y")),
        "toTimeString": _date_string(lambda d: d.local().strftime("%H:%M:%S")),
        "toLocaleString": _date_string(lambda d: _format_locale(d.local())),
        "toLocaleDateString": _date_string(lambda d: f"{d.local().year}/{d.local().month}/{d.local().day}"),
        "toLocaleTimeString": _date_string(lambda d: d.local().strftime("%H:%M:%S")),
    }.items()
}


def _construct_date(interp, args):
    if not args:
        return JSDate.now()
    if len(args) == 1:
        value = args[0]
        if isinstance(value, JSDate):
            return JSDate(value.ms)
        if isinstance(value, str):
            return JSDate(parse_date(value))
        return JSDate(to_number(value))
    numbers = [to_number(a) for a in args[:7]]
    if any(isinstance(n, float) and (math.isnan(n) or math.isinf(n)) for n in numbers):
        return JSDate(math.nan)
    parts = [int(n) for n in numbers] + [1, 0, 0, 0, 0][len(numbers) - 2:]
    return JSDate(_local_ms(*parts[:7]))


def _date_utc(interp, this, args):
    numbers = [to_number(a) for a in args[:7]] or [math.nan]
    if any(isinstance(n, float) and (math.isnan(n) or math.isinf(n)) for n in numbers):
        return math.nan
    parts = [int(n) for n in numbers]
    parts += [0, 1, 0, 0, 0, 0][len(parts) - 1:]
    return _local_ms(*parts[:7], utc=True)


# ═══════════════════════════════════════════════════════════════════
#                               RegExp / Promise
# ═══════════════════════════════════════════════════════════════════


def _this_regexp(this: Any) -> JSRegExp:
    if not isinstance(this, JSRegExp):
        raise _type_error("this is not a RegExp object.")
    return this


def _r_test(interp, this, args):
    return _regexp_exec(_this_regexp(this), to_string(_arg(args, 0))) is not None


def _r_exec(interp, this, args):
    text = to_string(_arg(args, 0))
    match = _regexp_exec(_this_regexp(this), text)
    return _match_result(match, text) if match else None


REGEXP_METHODS: Dict[str, HostFunction] = {
    "test": HostFunction(_r_test, "test", raw=True),
    "exec": HostFunction(_r_exec, "exec", raw=True),
    "toString": HostFunction(lambda interp, this, args: to_string(this), "toString", raw=True),
}


def _construct_regexp(interp, args):
    pattern = _arg(args, 0)
    flags = _arg(args, 1)
    source = pattern.source if isinstance(pattern, JSRegExp) else ("(?:)" if pattern is UNDEFINED else to_string(pattern))
    if flags is UNDEFINED:
        flags = pattern.flags if isinstance(pattern, JSRegExp) else ""
    return JSRegExp(source, to_string(flags))


def _settle_resolve(future: "asyncio.Future"):
    def resolve(value=UNDEFINED):
        if not future.done():
            future.set_result(value)
        return UNDEFINED
    return resolve


def _settle_reject(future: "asyncio.Future"):
    def reject(reason=UNDEFINED):
        if not future.done():
            future.set_exception(JSThrow(reason))
            future.add_done_callback(lambda f: f.exception())
        return UNDEFINED
    return reject


def _promise_call(interp, this, args):
    raise _type_error("Promise constructor cannot be invoked without 'new'")


async def _construct_promise(interp, args):
    executor = _arg(args, 0)
    if not is_callable(executor):
        raise _type_error(f"Promise resolver {to_string(executor)} is not a function")
    future = asyncio.get_running_loop().create_future()
    resolve = HostFunction(_settle_resolve(future), "resolve")
    reject = HostFunction(_settle_reject(future), "reject")
    try:
        await interp.call(executor, UNDEFINED, [resolve, reject])
    except JSThrow as exc:
        reject.fn(exc.value)
    return JSPromise(future)


async def _settle(interp, callback: Any, value: Any) -> Any:
    result = await interp.call(callback, UNDEFINED, [value])
    if isinstance(result, JSPromise):
        return await result.wait()
    return result


def _this_promise(this: Any) -> JSPromise:
    if not isinstance(this, JSPromise):
        raise _type_error("this is not a Promise.")
    return this


def _p_then(interp, this, args):
    promise = _this_promise(this)
    on_fulfilled, on_rejected = _arg(args, 0), _arg(args, 1)

    async def chain():
        try:
            value = await promise.wait()
        except JSThrow as exc:
            if is_callable(on_rejected):
                return await _settle(interp, on_rejected, exc.value)
            raise
        if is_callable(on_fulfilled):
            return await _settle(interp, on_fulfilled, value)
        return value

    return JSPromise(interp.spawn(chain()))


def _p_catch(interp, this, args):
    return _p_then(interp, this, [UNDEFINED, _arg(args, 0)])


def _p_finally(interp, this, args):
    promise = _this_promise(this)
    callback = _arg(args, 0)

    async def chain():
        try:
            return await promise.wait()
        finally:
            if is_callable(callback):
                await interp.call(callback, UNDEFINED, [])

    return JSPromise(interp.spawn(chain()))


PROMISE_METHODS: Dict[str, HostFunction] = {
    "then": HostFunction(_p_then, "then", raw=True),
    "catch": HostFunction(_p_catch, "catch", raw=True),
    "finally": HostFunction(_p_finally, "finally", raw=True),
}


async def _await_value(value: Any) -> Any:
    if isinstance(value, JSPromise):
        return await value.wait()
    return value


async def _promise_all(interp, this, args):
    items = interp.iterate(_arg(args, 0))
    try:
        results = [await _await_value(item) for item in items]
    except JSThrow as exc:
        return JSPromise.rejected(exc.value)
    return JSPromise.resolved(results)


async def _promise_all_settled(interp, this, args):
    results = []
    for item in interp.iterate(_arg(args, 0)):
        try:
            results.append(JSObject(status="fulfilled", value=await _await_value(item)))
        except JSThrow as exc:
            results.append(JSObject(status="rejected", reason=exc.value))
    return JSPromise.resolved(results)


async def _promise_race(interp, this, args):
    items = interp.iterate(_arg(args, 0))
    for item in items:
        if not isinstance(item, JSPromise):
            return JSPromise.resolved(item)
    if not items:
        return JSPromise(asyncio.get_running_loop().create_future())
    done, _ = await asyncio.wait([item.future for item in items], return_when=asyncio.FIRST_COMPLETED)
    first = next(item for item in items if item.future in done)
    return first


# ═══════════════════════════════════════════════════════════════════
#                               全局函数
# ═══════════════════════════════════════════════════════════════════


_PARSE_FLOAT = re.compile(r"^[+-]?(?:Infinity|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)")


def _parse_float(interp, this, args):
    text = to_string(_arg(args, 0)).strip()
    match = _PARSE_FLOAT.match(text)
    if not match:
        return math.nan
    token = match.group(0)
    if "Infinity" in token:
        return -math.inf if token.startswith("-") else math.inf
    value = float(token)
    return int(value) if value.is_integer() and abs(value) < 2 ** 53 else value


def _parse_int(interp, this, args):
    text = to_string(_arg(args, 0)).strip()
    radix = _to_integer(_arg(args, 1))
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if radix == 0:
        radix = 10
        if text[:2].lower() == "0x":
            radix = 16
            text = text[2:]
    elif radix == 16 and text[:2].lower() == "0x":
        text = text[2:]
    if not 2 <= radix <= 36:
        return math.nan
    valid = _DIGITS[:radix]
    digits = ""
    for ch in text.lower():
        if ch not in valid:
            break
        digits += ch
    if not digits:
        return math.nan
    return sign * int(digits, radix)


def _is_nan(interp, this, args):
    value = to_number(_arg(args, 0))
    return isinstance(value, float) and math.isnan(value)


def _is_finite(interp, this, args):
    value = to_number(_arg(args, 0))
    return not (isinstance(value, float) and (math.isnan(value) or math.isinf(value)))


def encode_uri_component(value: Any = UNDEFINED) -> str:
    return quote(to_string(value), safe="-_.!~*'()")


def decode_uri_component(value: Any = UNDEFINED) -> str:
    text = to_string(value)
    try:
        return unquote(text, errors="strict")
    except UnicodeDecodeError:
        raise JSThrow(make_error("URIError", "URI malformed"))


def _encode_uri(value: Any = UNDEFINED) -> str:
    return quote(to_string(value), safe="-_.!~*'();/?:@&=+$,#")


def _math_round(value: Any = UNDEFINED) -> float:
    number = to_number(value)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return number
    return math.floor(number + 0.5)


def _math_unary(fn: Callable[[float], float]):
    def apply(value: Any = UNDEFINED) -> float:
        number = to_number(value)
        try:
            return fn(number)
        except (ValueError, OverflowError):
            return math.nan
    return apply


def _math_floor(number: float) -> float:
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return number
    return math.floor(number)


def _math_ceil(number: float) -> float:
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return number
    return math.ceil(number)


def _math_trunc(number: float) -> float:
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return number
    return math.trunc(number)


def _math_sign(number: float) -> float:
    if isinstance(number, float) and math.isnan(number):
        return number
    return (number > 0) - (number < 0)


def _math_extreme(pick: Callable[..., float], empty: float):
    def apply(*values: Any) -> float:
        numbers = [to_number(v) for v in values]
        if any(isinstance(n, float) and math.isnan(n) for n in numbers):
            return math.nan
        return pick(numbers) if numbers else empty
    return apply


def _math_pow(base: Any = UNDEFINED, exponent: Any = UNDEFINED) -> float:
    return power(to_number(base), to_number(exponent))


def _math_atan2(y: Any = UNDEFINED, x: Any = UNDEFINED) -> float:
    return math.atan2(to_number(y), to_number(x))


def _math_hypot(*values: Any) -> float:
    return math.hypot(*(to_number(v) for v in values))


def _math_log(number: float) -> float:
    if number == 0:
        return -math.inf
    if number < 0 or (isinstance(number, float) and math.isnan(number)):
        return math.nan
    return math.log(number)


def _math_sqrt(number: float) -> float:
    if number < 0:
        return math.nan
    return math.sqrt(number)


def _build_math(rng: Callable[[], float]) -> JSObject:
    return JSObject(
        PI=math.pi,
        E=math.e,
        LN2=math.log(2),
        LN10=math.log(10),
        SQRT2=math.sqrt(2),
        abs=HostFunction(_math_unary(abs), "abs"),
        floor=HostFunction(_math_unary(_math_floor), "floor"),
        ceil=HostFunction(_math_unary(_math_ceil), "ceil"),
        round=HostFunction(_math_round, "round"),
        trunc=HostFunction(_math_unary(_math_trunc), "trunc"),
        sign=HostFunction(_math_unary(_math_sign), "sign"),
        sqrt=HostFunction(_math_unary(_math_sqrt), "sqrt"),
        cbrt=HostFunction(_math_unary(lambda n: math.copysign(abs(n) ** (1 / 3), n)), "cbrt"),
        log=HostFunction(_math_unary(_math_log), "log"),
        log2=HostFunction(_math_unary(lambda n: _math_log(n) / math.log(2)), "log2"),
        log10=HostFunction(_math_unary(lambda n: _math_log(n) / math.log(10)), "log10"),
        exp=HostFunction(_math_unary(math.exp), "exp"),
        sin=HostFunction(_math_unary(math.sin), "sin"),
        cos=HostFunction(_math_unary(math.cos), "cos"),
        tan=HostFunction(_math_unary(math.tan), "tan"),
        atan=HostFunction(_math_unary(math.atan), "atan"),
        atan2=HostFunction(_math_atan2, "atan2"),
        hypot=HostFunction(_math_hypot, "hypot"),
        pow=HostFunction(_math_pow, "pow"),
        max=HostFunction(_math_extreme(max, -math.inf), "max"),
        min=HostFunction(_math_extreme(min, math.inf), "min"),
        random=HostFunction(lambda: rng(), "random"),
    )


def _build_json() -> JSObject:
    return JSObject(
        parse=HostFunction(lambda text=UNDEFINED: json_parse(text), "parse"),
        stringify=HostFunction(
            lambda value=UNDEFINED, replacer=UNDEFINED, indent=UNDEFINED: json_stringify(value, indent),
            "stringify",
        ),
    )


def _build_console(logger: Any) -> JSObject:
    def writer(level: str):
        def write(*args: Any) -> Any:
            getattr(logger, level)("[插件] %s", " ".join(to_string(a) for a in args))
            return UNDEFINED
        return write

    return JSObject(
        log=HostFunction(writer("info"), "log"),
        info=HostFunction(writer("info"), "info"),
        debug=HostFunction(writer("debug"), "debug"),
        warn=HostFunction(writer("warning"), "warn"),
        error=HostFunction(writer("error"), "error"),
    )


def _object_keys(interp, value: Any) -> List[str]:
    if isinstance(value, dict):
        return list(value.keys())
    if isinstance(value, (list, str)):
        return [str(i) for i in range(len(value))]
    if is_nullish(value):
        raise _type_error("Cannot convert undefined or null to object")
    return []


def _build_object(interp) -> HostConstructor:
    def keys(interp_, this, args):
        return _object_keys(interp_, _arg(args, 0))

    def values(interp_, this, args):
        target = _arg(args, 0)
        return [interp_.get_member(target, key) for key in _object_keys(interp_, target)]

    def entries(interp_, this, args):
        target = _arg(args, 0)
        return [[key, interp_.get_member(target, key)] for key in _object_keys(interp_, target)]

    def assign(interp_, this, args):
        target = _arg(args, 0)
        if not isinstance(target, dict):
            raise _type_error("Object.assign target must be an object")
        for source in args[1:]:
            if isinstance(source, dict):
                target.update(source)
        return target

    def from_entries(interp_, this, args):
        result = JSObject()
        for entry in interp_.iterate(_arg(args, 0)):
            if isinstance(entry, list) and entry:
                result[to_property_key(entry[0])] = entry[1] if len(entry) > 1 else UNDEFINED
        return result

    def call(interp_, this, args):
        value = _arg(args, 0)
        return JSObject() if is_nullish(value) else value

    return HostConstructor(
        call,
        "Object",
        construct=lambda interp_, args: call(interp_, UNDEFINED, args),
        instance_check=lambda v: isinstance(v, (dict, list, JSFunction, HostFunction, JSDate, JSRegExp, JSPromise)),
        statics={
            "keys": HostFunction(keys, "keys", raw=True),
            "values": HostFunction(values, "values", raw=True),
            "entries": HostFunction(entries, "entries", raw=True),
            "assign": HostFunction(assign, "assign", raw=True),
            "fromEntries": HostFunction(from_entries, "fromEntries", raw=True),
            "freeze": HostFunction(lambda interp_, this, args: _arg(args, 0), "freeze", raw=True),
            "create": HostFunction(lambda interp_, this, args: JSObject(), "create", raw=True),
        },
    )


def _build_array() -> HostConstructor:
    async def array_from(interp, this, args):
        source = _arg(args, 0)
        mapper = _arg(args, 1)
        if isinstance(source, dict):
            length = _to_integer(source.get("length", 0))
            items = [source.get(str(i), UNDEFINED) for i in range(max(length, 0))]
        elif is_nullish(source):
            raise _type_error("Array.from requires an array-like object")
        else:
            items = list(interp.iterate(source)) if isinstance(source, (list, str)) else []
        if is_callable(mapper):
            return [await interp.call(mapper, UNDEFINED, [item, index]) for index, item in enumerate(items)]
        return items

    def construct(interp, args):
        if len(args) == 1 and is_number(args[0]):
            length = args[0]
            if length < 0 or int(length) != length:
                raise _range_error("Invalid array length")
            return [UNDEFINED] * int(length)
        return list(args)

    return HostConstructor(
        lambda interp, this, args: construct(interp, args),
        "Array",
        construct=construct,
        instance_check=lambda v: isinstance(v, list),
        statics={
            "isArray": HostFunction(lambda value=UNDEFINED: isinstance(value, list), "isArray"),
            "from": HostFunction(array_from, "from", raw=True),
            "of": HostFunction(lambda interp, this, args: list(args), "of", raw=True),
        },
    )


def _error_constructor(name: str) -> HostConstructor:
    def create(interp, this, args):
        return make_error(name, _arg(args, 0))

    if name == "Error":
        check = lambda v: isinstance(v, JSObject) and v.class_name in ERROR_TYPES
    else:
        check = lambda v: isinstance(v, JSObject) and v.class_name == name
    return HostConstructor(create, name, construct=lambda interp, args: create(interp, UNDEFINED, args),
                           instance_check=check)


def _build_timers(interp) -> Dict[str, HostFunction]:
    def set_timeout(interp_, this, args):
        callback = _arg(args, 0)
        _require_callable(callback, "setTimeout")
        delay = to_number(_arg(args, 1))
        delay = 0 if isinstance(delay, float) and math.isnan(delay) else max(delay, 0)
        extra = list(args[2:])

        async def fire():
            await asyncio.sleep(delay / 1000)
            await interp_.call(callback, UNDEFINED, extra)

        return interp_.add_timer(fire())

    def clear_timeout(interp_, this, args):
        interp_.cancel_timer(_arg(args, 0))
        return UNDEFINED

    return {
        "setTimeout": HostFunction(set_timeout, "setTimeout", raw=True),
        "clearTimeout": HostFunction(clear_timeout, "clearTimeout", raw=True),
    }


def create_globals(interp, logger: Any, rng: Callable[[], float] = random.random) -> Dict[str, Any]:
    """为一次脚本执行构建全局对象（每次执行独立一份）。"""
    number_statics = {
        "isInteger": HostFunction(
            lambda value=UNDEFINED: is_number(value) and not (isinstance(value, float) and
                                                             (math.isnan(value) or math.isinf(value)))
            and float(value).is_integer(),
            "isInteger",
        ),
        "isFinite": HostFunction(
            lambda value=UNDEFINED: is_number(value) and _is_finite(None, None, [value]), "isFinite"
        ),
        "isNaN": HostFunction(lambda value=UNDEFINED: isinstance(value, float) and math.isnan(value), "isNaN"),
        "parseFloat": HostFunction(_parse_float, "parseFloat", raw=True),
        "parseInt": HostFunction(_parse_int, "parseInt", raw=True),
        "MAX_SAFE_INTEGER": 2 ** 53 - 1,
        "MIN_SAFE_INTEGER": -(2 ** 53 - 1),
        "EPSILON": 2.0 ** -52,
        "MAX_VALUE": 1.7976931348623157e308,
        "POSITIVE_INFINITY": math.inf,
        "NEGATIVE_INFINITY": -math.inf,
        "NaN": math.nan,
    }

    def number_call(interp_, this, args):
        return to_number(args[0]) if args else 0

    def string_call(interp_, this, args):
        return to_string(args[0]) if args else ""

    def boolean_call(interp_, this, args):
        return to_boolean(_arg(args, 0))

    globals_: Dict[str, Any] = {
        "undefined": UNDEFINED,
        "NaN": math.nan,
        "Infinity": math.inf,
        "Math": _build_math(rng),
        "JSON": _build_json(),
        "console": _build_console(logger),
        "Object": _build_object(interp),
        "Array": _build_array(),
        "Number": HostConstructor(number_call, "Number", construct=lambda i, a: number_call(i, None, a),
                                  instance_check=lambda v: False, statics=number_statics),
        "String": HostConstructor(
            string_call, "String", construct=lambda i, a: string_call(i, None, a),
            instance_check=lambda v: False,
            statics={"fromCharCode": HostFunction(
                lambda interp_, this, args: "".join(chr(_to_integer(a) & 0xFFFF) for a in args),
                "fromCharCode", raw=True,
            )},
        ),
        "Boolean": HostConstructor(boolean_call, "Boolean", construct=lambda i, a: boolean_call(i, None, a),
                                   instance_check=lambda v: False),
        "Date": HostConstructor(
            lambda interp_, this, args: to_string(JSDate.now()),
            "Date",
            construct=_construct_date,
            instance_check=lambda v: isinstance(v, JSDate),
            statics={
                "now": HostFunction(lambda: int(time.time() * 1000), "now"),
                "parse": HostFunction(lambda text=UNDEFINED: parse_date(to_string(text)), "parse"),
                "UTC": HostFunction(_date_utc, "UTC", raw=True),
            },
        ),
        "RegExp": HostConstructor(
            lambda interp_, this, args: _construct_regexp(interp_, args),
            "RegExp",
            construct=_construct_regexp,
            instance_check=lambda v: isinstance(v, JSRegExp),
        ),
        "Promise": HostConstructor(
            _promise_call,
            "Promise",
            construct=_construct_promise,
            instance_check=lambda v: isinstance(v, JSPromise),
            statics={
                "resolve": HostFunction(lambda value=UNDEFINED: JSPromise.resolved(value), "resolve"),
                "reject": HostFunction(lambda reason=UNDEFINED: JSPromise.rejected(reason), "reject"),
                "all": HostFunction(_promise_all, "all", raw=True),
                "allSettled": HostFunction(_promise_all_settled, "allSettled", raw=True),
                "race": HostFunction(_promise_race, "race", raw=True),
            },
        ),
        "parseInt": HostFunction(_parse_int, "parseInt", raw=True),
        "parseFloat": HostFunction(_parse_float, "parseFloat", raw=True),
        "isNaN": HostFunction(_is_nan, "isNaN", raw=True),
        "isFinite": HostFunction(_is_finite, "isFinite", raw=True),
        "encodeURIComponent": HostFunction(encode_uri_component, "encodeURIComponent"),
        "decodeURIComponent": HostFunction(decode_uri_component, "decodeURIComponent"),
        "encodeURI": HostFunction(_encode_uri, "encodeURI"),
        "decodeURI": HostFunction(decode_uri_component, "decodeURI"),
    }
    for name in ERROR_TYPES:
        globals_[name] = _error_constructor(name)
    globals_.update(_build_timers(interp))
    return globals_
