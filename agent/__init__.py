"""Agent internals -- the orchestration engine and its collaborators.

Module Overview
---------------
This package contains the following components:

**engine.py**
    ExecutionEngine -- the turn state machine. Renders script turns, calls
    the backend, dispatches tool calls and emits events on a bounded channel.

**script.py** / **template.py**
    Script models and loaders (structured YAML and front-matter formats),
    and ``{{placeholder}}`` rendering with dot paths and filters.

**conversation.py**
    ConversationEntry and its parts (text, tool call, tool result).

**context_window.py**
    Context-window pruning: keeps the leading system entry and the newest
    tail within budget, and summarizes what was evicted.

**model_metadata.py**
    Model context lengths and rough token estimation.

**backend.py**
    Backend protocol and the OpenAI-compatible adapter, including
    text-embedded ``<tool_call>`` parsing.

**credentials.py** / **providers.py**
    Provider catalog, per-provider credential pools and the rotating
    retry loop that classifies transient vs. non-transient failures.

**tool_executor.py**
    Concurrent tool-call dispatch with result truncation and cancellation.

**intent.py**
    Keyword-based intent classification (create / debug / question).

**events.py**
    Engine events and the EventChannel that carries them to the host.

**config.py** / **knowledge.py**
    EngineConfig loading and the knowledge-store collaborator.

Architecture
------------
1. **Per-session objects**: registries, credential managers and engines are
   constructed per session; there are no module-level singletons.

2. **No circular imports**: modules depend on ``tools`` and
   ``aterm_constants``, never on run_agent.py.

3. **ExecutionEngine as orchestrator**: the engine coordinates these modules
   but doesn't contain their implementation.
"""
