"""Minimal scripted language server used by the integration tests.

Speaks Content-Length framed JSON-RPC on stdin/stdout. Every received method
is appended to the ``--log`` file so tests can assert ordering and spawn
counts. ``--mode`` selects misbehaviour:

- normal: well-behaved server
- crash-after-init: exits with code 1 shortly after ``initialized``
- die-on-start: exits before reading anything
- no-init: never answers ``initialize``
- ignore-shutdown: never answers ``shutdown`` and ignores ``exit``
- ignore-exit: answers ``shutdown`` but ignores ``exit``
"""

import argparse
import json
import os
import sys
import time


def read_message(stream):
    headers = {}
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.decode("ascii").partition(":")
        headers[name.strip().lower()] = value.strip()
    body = stream.read(int(headers["content-length"]))
    return json.loads(body.decode("utf-8"))


def write_message(stream, payload):
    body = json.dumps(payload).encode("utf-8")
    stream.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
    stream.flush()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", default="normal")
    parser.add_argument("--log", default=None)
    args = parser.parse_args()

    log = open(args.log, "a", encoding="utf-8") if args.log else None

    def record(event):
        if log is not None:
            log.write(event + "\n")
            log.flush()

    record(f"spawn {os.getpid()}")
    record(f"cwd {os.getcwd()}")
    if args.mode == "die-on-start":
        return 1

    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer

    def respond(msg_id, result=None, error=None):
        payload = {"jsonrpc": "2.0", "id": msg_id}
        if error is not None:
            payload["error"] = error
        else:
            payload["result"] = result
        write_message(stdout, payload)

    while True:
        msg = read_message(stdin)
        if msg is None:
            record("eof")
            return 0
        method = msg.get("method")
        msg_id = msg.get("id")
        params = msg.get("params")
        if method is None:
            continue
        record(method)

        if method == "initialize":
            record("initOptions " + json.dumps(params.get("initializationOptions")))
            if args.mode == "no-init":
                continue
            respond(msg_id, {
                "capabilities": {"hoverProvider": True, "textDocumentSync": 1},
                "serverInfo": {"name": "fake-lsp", "version": "1.0"},
                "echoRoot": params.get("rootUri"),
            })
        elif method == "initialized":
            if args.mode == "crash-after-init":
                time.sleep(0.2)
                return 1
        elif method == "shutdown":
            if args.mode == "ignore-shutdown":
                continue
            respond(msg_id, None)
        elif method == "exit":
            if args.mode in ("ignore-shutdown", "ignore-exit"):
                continue
            return 0
        elif method == "test/echo":
            respond(msg_id, params)
        elif method == "test/slow":
            time.sleep(params["delay"])
            respond(msg_id, "slow-done")
        elif method == "test/hang":
            continue
        elif method == "test/notify":
            write_message(stdout, {"jsonrpc": "2.0", "method": "test/event", "params": params})
            respond(msg_id, True)
        elif method == "test/askClient":
            write_message(stdout, {
                "jsonrpc": "2.0",
                "id": "srv-1",
                "method": params["method"],
                "params": params.get("params"),
            })
            while True:
                reply = read_message(stdin)
                if reply is None:
                    return 0
                if reply.get("id") == "srv-1" and "method" not in reply:
                    break
            reply.pop("jsonrpc", None)
            reply.pop("id", None)
            respond(msg_id, reply)
        elif method == "test/flood":
            # Asks the client something, then writes without reading stdin.
            write_message(stdout, {
                "jsonrpc": "2.0",
                "id": "srv-flood",
                "method": "workspace/configuration",
                "params": {"items": [{}]},
            })
            for n in range(400):
                write_message(stdout, {"jsonrpc": "2.0", "method": "test/event", "params": {"n": n, "pad": "x" * 1024}})
            respond(msg_id, True)
        elif method == "test/garbage":
            stdout.write(b"Content-Length: 5\r\n\r\n{bad}")
            stdout.flush()
            respond(msg_id, "after-garbage")
        elif method == "test/fail":
            respond(msg_id, error={"code": -32803, "message": "request failed", "data": {"why": "test"}})
        elif method == "test/crash":
            return 3
        elif method == "$/cancelRequest":
            continue
        elif msg_id is not None:
            respond(msg_id, error={"code": -32601, "message": f"Method not found: {method}"})


if __name__ == "__main__":
    sys.exit(main())
