"""
Scripted MCP backend used by the test suite.

Speaks line-delimited JSON-RPC on stdin/stdout. Behaviour is selected with
the FAKE_MODE environment variable:

    normal        regular backend
    banner        prints a few non-JSON lines before serving
    noise         prints non-JSON lines forever instead of answering
    reject_init   answers initialize with an error
    crash_init    exits when initialize arrives
    garbage_list  answers tools/list with invalid JSON
    no_tools      answers tools/list without a tools array
"""

import json
import os
import sys
import time

MODE = os.environ.get("FAKE_MODE", "normal")

TOOLS = [
    {"name": "echo", "description": "Echo the arguments", "inputSchema": {"type": "object"}},
    {
        "name": "env",
        "description": "Read an environment variable",
        "inputSchema": {"type": "object", "properties": {"key": {"type": "string"}}},
    },
    {"name": "fail", "description": "Always fails"},
    {"name": "soft_fail", "description": "Returns an error result"},
    {"name": "pid", "description": "Process id of the backend"},
    {"name": "sleep", "description": "Sleep for a while"},
    {"name": "plain", "description": "Returns a bare string"},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def reply(request_id, result):
    send({"jsonrpc": "2.0", "id": request_id, "result": result})


def error(request_id, code, message):
    send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def text(value):
    return {"content": [{"type": "text", "text": value}]}


def call_tool(request_id, name, arguments):
    if name == "echo":
        reply(request_id, text(json.dumps(arguments, sort_keys=True)))
    elif name == "env":
        reply(request_id, text(os.environ.get(arguments.get("key", ""), "")))
    elif name == "fail":
        error(request_id, -32000, "tool exploded")
    elif name == "soft_fail":
        reply(request_id, {"content": [{"type": "text", "text": "soft"}], "isError": True})
    elif name == "pid":
        reply(request_id, {"pid": os.getpid()})
    elif name == "sleep":
        time.sleep(float(arguments.get("seconds", 1)))
        reply(request_id, {"slept": arguments.get("seconds", 1)})
    elif name == "plain":
        reply(request_id, "plain text")
    else:
        error(request_id, -32601, f"Unknown tool: {name}")


def main():
    sys.stderr.write(f"fake backend starting in {MODE} mode\n")
    sys.stderr.flush()

    if MODE == "banner":
        for index in range(3):
            sys.stdout.write(f"banner line {index}\n")
        sys.stdout.flush()

    if MODE == "noise":
        while True:
            sys.stdout.write("still booting...\n")
            sys.stdout.flush()
            time.sleep(0.01)

    initialized = False
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        method = message.get("method")

        if "id" not in message:
            if method == "notifications/initialized":
                initialized = True
            continue

        request_id = message["id"]
        params = message.get("params") or {}

        if method == "initialize":
            if MODE == "reject_init":
                error(request_id, -32602, "unsupported protocol version")
                continue
            if MODE == "crash_init":
                sys.exit(3)
            reply(request_id, {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0", "client": params.get("clientInfo")},
            })
        elif not initialized:
            error(request_id, -32002, "initialized notification not received")
        elif method == "tools/list":
            if MODE == "garbage_list":
                sys.stdout.write("{this is not json\n")
                sys.stdout.flush()
            elif MODE == "no_tools":
                reply(request_id, {})
            else:
                reply(request_id, {"tools": TOOLS})
        elif method == "tools/call":
            call_tool(request_id, params.get("name"), params.get("arguments") or {})
        else:
            error(request_id, -32601, f"Method not found: {method}")


if __name__ == "__main__":
    main()
