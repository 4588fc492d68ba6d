"""Codex Bridge internals -- drive an external ``codex`` agent across chat turns.

Module Overview
---------------
**token_estimator.py**
    Byte-length token estimate and text clamping. Leaf utility used
    everywhere a budget matters.

**history_formatter.py**
    Budgeted renderings of a session's recent turns for prompt stitching.

**mentions.py**
    Resolves ``@[[path]]`` tokens into document/folder content blocks.

**skill_catalog.py**
    Scans skill roots for ``SKILL.md`` files and caches the catalog.

**context_budget.py**
    Context-window occupancy estimate and history compaction.

**prompt_builder.py** / **intent.py**
    Final prompt assembly and the keyword heuristics it branches on.

**codex_app_server.py** / **codex_exec.py** / **agent_driver.py**
    The streaming JSON-RPC path, the one-shot batch path, and the policy
    that picks between them.

**session_store.py**
    Normalization and serialized persistence of chat sessions.

**app_context.py** / **chat.py**
    Wiring of all the above and the per-turn orchestration.

**async_bridge.py**
    Runs a coroutine to completion from synchronous callers (the CLI).

Architecture
------------
1. **Leaf-first**: the estimator, formatters and heuristics are pure
   functions taking all state as arguments.

2. **One owner per process**: every driver invocation owns its child
   process and tears it down exactly once.

3. **BridgeApp as orchestrator**: components receive their collaborators by
   injection; no module-level mutable state outside ``BridgeApp``.
"""
