"""Fake ``codex`` binary for subprocess-level tests.

Speaks just enough of both agent interfaces used by the bridge:

- ``app-server``  -- line-delimited JSON-RPC over stdio
- ``exec [resume <id>] ... -o FILE`` -- one-shot run reading the prompt on stdin

Behavior is scripted through environment variables:

    FAKE_CODEX_MODE          ok | resume_fails | no_thread | turn_error |
                             close_mid_turn | close_after_init | hang |
                             no_app_server
    FAKE_CODEX_DELTAS        JSON list of agent message deltas
    FAKE_CODEX_ITEMS_TEXT    agentMessage text reported in turn/completed items
    FAKE_CODEX_EXEC_REPLY    exec answer text
    FAKE_CODEX_EXEC_EXIT     exec exit code
    FAKE_CODEX_LOG           JSON-lines file recording argv and every request

Usage (tests wrap it in a small shell script so it can be spawned directly)::

    python tests/fakes/fake_codex.py app-server
"""

import json
import os
import sys

SESSION_UUID = "0199a213-81c0-7800-8aa1-bbab2a035a53"
THREAD_NEW = "thread-new"
TURN_ID = "turn-1"


def _log(entry):
    path = os.getenv("FAKE_CODEX_LOG")
    if not path:
        return
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False) + "\n")


def _send(payload):
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _notify(method, params):
    _send({"jsonrpc": "2.0", "method": method, "params": params})


def _deltas():
    raw = os.getenv("FAKE_CODEX_DELTAS")
    if raw is None:
        return ["Hel", "lo", " world"]
    return json.loads(raw)


def _run_turn(mode, thread_id):
    _notify("turn/started", {"threadId": thread_id, "turn": {"id": TURN_ID}})
    if mode == "hang":
        return
    _notify("item/started", {"threadId": thread_id, "item": {"type": "reasoning"}})
    _notify("item/reasoning/textDelta", {"threadId": thread_id, "turnId": TURN_ID, "delta": "thinking"})
    # stale turn and foreign thread noise must be ignored
    _notify("item/agentMessage/delta", {"threadId": thread_id, "turnId": "turn-0", "delta": "STALE"})
    _notify("item/agentMessage/delta", {"threadId": "other", "turnId": TURN_ID, "delta": "FOREIGN"})
    deltas = _deltas()
    if mode == "close_mid_turn":
        if deltas:
            _notify("item/agentMessage/delta", {"threadId": thread_id, "turnId": TURN_ID, "delta": deltas[0]})
        sys.exit(0)
    if mode == "turn_error":
        _notify("error", {"threadId": thread_id, "turnId": TURN_ID, "error": {"message": "model overloaded"}})
        return
    _notify("item/started", {"threadId": thread_id, "item": {"type": "commandExecution"}})
    for delta in deltas:
        _notify("item/agentMessage/delta", {"threadId": thread_id, "turnId": TURN_ID, "delta": delta})
    items = []
    items_text = os.getenv("FAKE_CODEX_ITEMS_TEXT")
    if items_text:
        items.append({"type": "agentMessage", "text": items_text})
    _notify("turn/completed", {"threadId": thread_id, "turn": {"id": TURN_ID, "items": items}})


def app_server(mode):
    if mode == "no_app_server":
        sys.stderr.write("error: unrecognized subcommand 'app-server'\n")
        sys.exit(2)
    sys.stderr.write("fake app-server ready\n")
    sys.stderr.flush()
    stdout_closed = False
    while True:
        line = sys.stdin.readline()
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        _log({"rpc": msg})
        method = msg.get("method")
        if "id" not in msg:
            continue
        req_id = msg["id"]
        params = msg.get("params") or {}
        if stdout_closed:
            continue

        if method == "initialize":
            _send({"id": req_id, "result": {"userAgent": "fake-codex/0.0"}})
            if mode == "close_after_init":
                sys.stdout.close()
                os.close(1)
                stdout_closed = True
        elif method == "thread/resume":
            if mode == "resume_fails":
                _send({"id": req_id, "error": {"code": -32600, "message": "no rollout found"}})
            else:
                _send({"id": req_id, "result": {"thread": {"id": params.get("threadId")}}})
        elif method == "thread/start":
            if mode == "no_thread":
                _send({"id": req_id, "result": {}})
            else:
                _send({"id": req_id, "result": {"thread": {"id": THREAD_NEW}}})
        elif method == "addConversationListener":
            _send({"id": req_id, "result": {"subscriptionId": "sub-1"}})
        elif method == "removeConversationListener":
            _send({"id": req_id, "result": {}})
        elif method == "turn/start":
            _send({"id": req_id, "result": {"turn": {"id": TURN_ID}}})
            _run_turn(mode, params.get("threadId"))
        else:
            _send({"id": req_id, "error": {"code": -32601, "message": f"unknown method {method}"}})


def exec_mode(argv):
    prompt = sys.stdin.read()
    _log({"argv": argv, "prompt": prompt})
    code = int(os.getenv("FAKE_CODEX_EXEC_EXIT", "0"))
    if code:
        sys.stderr.write("exec failed on purpose\n")
        sys.exit(code)
    reply = os.getenv("FAKE_CODEX_EXEC_REPLY", "exec answer")
    sys.stderr.write(f"session id: {SESSION_UUID}\n")
    if "-o" in argv:
        out = argv[argv.index("-o") + 1]
        with open(out, "w", encoding="utf-8") as f:
            f.write(reply)
        sys.stdout.write("progress noise\n")
    else:
        sys.stdout.write(reply)
    sys.stdout.flush()


def main(argv):
    _log({"argv": argv})
    mode = os.getenv("FAKE_CODEX_MODE", "ok")
    if "app-server" in argv:
        app_server(mode)
    elif argv and argv[0] == "exec":
        exec_mode(argv)
    else:
        sys.stderr.write(f"unsupported invocation: {argv}\n")
        sys.exit(64)


if __name__ == "__main__":
    main(sys.argv[1:])
