"""Scripted worker speaking the newline-delimited JSON protocol.

Used by the subprocess-backed tests as a stand-in for both the transcription
worker and the native helper.  Behaviour is selected per request method:

echo            result = params
sleep           sleep ``seconds`` then answer
crash           exit immediately with ``code`` (no reply)
pid             answer ``{"pid": ...}``
fail            error reply with ``code`` / ``message``
unknownReply    answer an id nobody asked for, then answer normally
malformed       write a garbage line, then answer normally
emit            push event ``event`` with ``payload``
pressKeys       push ``key-down`` for ``down`` and ``key-up`` for ``up``
muteSystemAudio / restoreSystemAudio / pasteText / getAccessibilityContext /
getAccessibilityTreeDetails / checkFoundationModelAvailability
                helper catalog with canned answers
stats           per-method call counters
shutdown        exit 0

``--exit-at-start CODE`` makes the process die before serving anything.
"""

import argparse
import json
import os
import sys
import time
from collections import Counter


def _write(stream, payload):
    stream.write((json.dumps(payload) + "\n").encode("utf-8"))
    stream.flush()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-at-start", type=int, default=None)
    parser.add_argument("--no-ready", action="store_true")
    args = parser.parse_args()

    if args.exit_at_start is not None:
        sys.stderr.write("fatal: scripted startup failure\n")
        sys.stderr.flush()
        sys.exit(args.exit_at_start)

    out = sys.stdout.buffer
    calls = Counter()
    sys.stderr.write("scripted worker %d started\n" % os.getpid())
    sys.stderr.flush()
    if not args.no_ready:
        _write(out, {"method": "ready", "params": {"pid": os.getpid()}})

    for raw in iter(sys.stdin.buffer.readline, b""):
        raw = raw.strip()
        if not raw:
            continue
        request = json.loads(raw)
        method = request.get("method")
        params = request.get("params") or {}
        request_id = request.get("id")
        calls[method] += 1

        def reply(result):
            _write(out, {"id": request_id, "result": result})

        if method == "shutdown":
            break
        if method == "echo":
            reply(params)
        elif method == "sleep":
            time.sleep(float(params.get("seconds", 1.0)))
            reply({"slept": params.get("seconds", 1.0)})
        elif method == "crash":
            out.flush()
            os._exit(int(params.get("code", 3)))
        elif method == "pid":
            reply({"pid": os.getpid()})
        elif method == "fail":
            _write(out, {"id": request_id, "error": {
                "code": params.get("code", "boom"), "message": params.get("message", "scripted failure")}})
        elif method == "unknownReply":
            _write(out, {"id": "no-such-request", "result": {"stray": True}})
            reply({"ok": True})
        elif method == "malformed":
            out.write(b"{this is not json\n")
            out.flush()
            reply({"ok": True})
        elif method == "emit":
            _write(out, {"method": params.get("event", "ping"), "params": params.get("payload", {})})
            reply({"emitted": True})
        elif method == "pressKeys":
            for code in params.get("down", []):
                _write(out, {"method": "key-down", "params": {"keyCode": code}})
            for code in params.get("up", []):
                _write(out, {"method": "key-up", "params": {"keyCode": code}})
            reply({"ok": True})
        elif method in ("muteSystemAudio", "restoreSystemAudio"):
            reply({"success": True})
        elif method == "pasteText":
            reply({"success": bool(params.get("transcript"))})
        elif method == "getAccessibilityContext":
            reply({"context": {
                "application": {"name": "Editor", "bundleId": "com.example.editor"},
                "focusedElement": {"role": "AXTextArea", "editable": True},
                "textSelection": None,
                "windowInfo": {"title": "notes.txt"},
            }})
        elif method == "getAccessibilityTreeDetails":
            reply({"data": {"rootId": params.get("rootId"), "children": []}})
        elif method == "checkFoundationModelAvailability":
            reply({"available": False, "reason": "not supported on this device"})
        elif method == "stats":
            reply(dict(calls))
        else:
            _write(out, {"id": request_id, "error": {"code": "unknown_method", "message": method}})
    return 0


if __name__ == "__main__":
    sys.exit(main())
