import asyncio

import pytest

from botrelay.errors import PluginError
from botrelay.sandbox import (
    SandboxError,
    ScriptAbort,
    ScriptError,
    ScriptSyntaxError,
    ScriptTimeout,
    run_script,
)


async def run(code, capabilities=None, **kwargs):
    return await run_script(code, capabilities or {}, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════════
#                               语言特性
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_arithmetic_and_template_literals():
    code = """
    function main() {
        const a = 6, b = 7;
        return `${a} * ${b} = ${a * b}`;
    }
    """
    assert await run(code) == "6 * 7 = 42"


@pytest.mark.asyncio
async def test_variable_declarations_and_loops():
    code = """
    var seen = [];
    function main() {
        let total = 0;
        for (const n of [1, 2, 3]) { total += n; }
        for (let key in { a: 1, b: 2 }) { seen.push(key); }
        for (var i = 0; i < 2; i++) { total += 10; }
        const { name, tags: [first] } = { name: 'bot', tags: ['x', 'y'] };
        return [total, i, seen.join(','), name, first];
    }
    """
    assert await run(code) == [26, 2, "a,b", "bot", "x"]


@pytest.mark.asyncio
async def test_const_cannot_be_reassigned():
    with pytest.raises(ScriptError) as excinfo:
        await run("function main() { const x = 1; x = 2; }")
    assert "constant" in str(excinfo.value)


@pytest.mark.asyncio
async def test_array_methods_and_arrows():
    code = """
    function main() {
        const nums = [5, 3, 8, 1];
        const doubled = nums.map(n => n * 2).filter(n => n > 5);
        const total = nums.reduce((sum, n) => sum + n, 0);
        return { doubled, total, joined: nums.join('-') };
    }
    """
    assert await run(code) == {"doubled": [10, 6, 16], "total": 17, "joined": "5-3-8-1"}


@pytest.mark.asyncio
async def test_string_methods():
    code = """
    function main() {
        const text = '  Hello World  ';
        return [text.trim().toUpperCase(), 'a,b,c'.split(','), '7'.padStart(3, '0'), text.includes('World')];
    }
    """
    assert await run(code) == ["HELLO WORLD", ["a", "b", "c"], "007", True]


@pytest.mark.asyncio
async def test_json_round_trip_inside_script():
    code = """
    function main() {
        const data = JSON.parse('{"city": "北京", "list": [1, 2]}');
        data.list.push(3);
        return JSON.stringify(data.list) + data.city;
    }
    """
    assert await run(code) == "[1,2,3]北京"


@pytest.mark.asyncio
async def test_try_catch_handles_thrown_errors():
    code = """
    function main() {
        try {
            throw new Error('inner');
        } catch (e) {
            return 'caught ' + e.message;
        }
    }
    """
    assert await run(code) == "caught inner"


@pytest.mark.asyncio
async def test_async_host_capability_is_awaited():
    async def fetch(name):
        await asyncio.sleep(0)
        return {"name": name, "score": 90}

    code = """
    async function main() {
        const result = await fetch('alice');
        return result.name + ':' + result.score;
    }
    """
    assert await run(code, {"fetch": fetch}) == "alice:90"


@pytest.mark.asyncio
async def test_host_errors_can_be_caught_by_script():
    def explode():
        raise RuntimeError("host failure")

    code = """
    function main() {
        try {
            explode();
            return 'unreachable';
        } catch (e) {
            return e.message;
        }
    }
    """
    assert await run(code, {"explode": explode}) == "host failure"


@pytest.mark.asyncio
async def test_extra_arguments_to_capabilities_are_ignored():
    received = []

    def record(text):
        received.append(text)

    await run("function main() { record('a', 'b', 'c'); }", {"record": record})
    assert received == ["a"]


# ═══════════════════════════════════════════════════════════════════════════════
#                               错误与限制
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_syntax_error():
    with pytest.raises(ScriptSyntaxError):
        await run("function main( {")


@pytest.mark.asyncio
async def test_missing_entry_function():
    with pytest.raises(ScriptError):
        await run("const x = 1;")


@pytest.mark.asyncio
async def test_uncaught_throw_becomes_script_error():
    with pytest.raises(ScriptError) as excinfo:
        await run("function main() { throw new Error('kaboom'); }")
    assert "kaboom" in str(excinfo.value)


@pytest.mark.asyncio
async def test_infinite_loop_is_aborted_by_step_limit():
    with pytest.raises(ScriptAbort):
        await run("function main() { let i = 0; while (true) { i++; } }", max_steps=1000)


@pytest.mark.asyncio
async def test_abort_cannot_be_caught_by_script():
    code = """
    function main() {
        try {
            while (true) {}
        } catch (e) {
            return 'escaped';
        }
    }
    """
    with pytest.raises(ScriptAbort):
        await run(code, max_steps=1000)


@pytest.mark.asyncio
async def test_deeply_nested_source_is_aborted():
    depth = 600
    code = "function main() { return " + "(" * depth + "1" + ")" * depth + "; }"
    with pytest.raises(ScriptAbort):
        await run(code)


@pytest.mark.asyncio
async def test_slow_script_times_out():
    async def wait():
        await asyncio.sleep(5)

    with pytest.raises(ScriptTimeout):
        await run("async function main() { await wait(); }", {"wait": wait}, timeout_sec=0.05)


@pytest.mark.asyncio
async def test_python_runtime_is_not_reachable():
    with pytest.raises(ScriptError) as excinfo:
        await run("function main() { return __import__('os'); }")
    assert "__import__" in str(excinfo.value)

    assert await run("function main() { return typeof open; }") == "undefined"
    assert await run("function main() { return typeof 'abc'.__class__; }") == "undefined"


def test_error_hierarchy():
    for error in (ScriptSyntaxError, ScriptError, ScriptAbort, ScriptTimeout):
        assert issubclass(error, SandboxError)
    assert issubclass(SandboxError, PluginError)
