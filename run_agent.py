#!/usr/bin/env python3
"""
Assistant Runner

Runs a script (or a single message) against a workspace with the agent
execution engine, streaming the session's events to the terminal.

Usage:
    python run_agent.py --query="why does test_parser fail?" --workspace=.
    python run_agent.py --script=scripts/review.md --params='{"file": "app.py"}'
    python run_agent.py --list_tools
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import fire
from dotenv import load_dotenv

from agent.backend import OpenAICompatibleBackend
from agent.config import ConfigValidationError, EngineConfig, load_config
from agent.context_window import ContextWindowManager
from agent.credentials import (
    CredentialPoolEntry,
    CredentialRotationManager,
    credentials_from_env,
    load_credentials,
    mask_secret,
)
from agent.engine import ExecutionEngine, ExecutionResult
from agent.events import Done, ErrorEvent, TextChunk, ToolCallStarted, ToolResultEvent
from agent.intent import classify, detect_project_context
from agent.knowledge import InMemoryKnowledgeStore
from agent.providers import detect_auto_provider, get_provider, resolve_provider_base_url
from agent.script import Script, ScriptError, load_script
from agent.tool_executor import ToolExecConfig
from aterm_constants import CREDENTIALS_FILENAME, get_aterm_home
from tools import build_default_registry

logger = logging.getLogger(__name__)


def _load_env() -> None:
    """Load .env from $ATERM_HOME first, then the project root as dev fallback."""
    user_env = get_aterm_home() / ".env"
    project_env = Path(__file__).parent / ".env"
    for env_path in (user_env, project_env):
        if not env_path.exists():
            continue
        try:
            load_dotenv(dotenv_path=env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_path, encoding="latin-1")
        logger.info("Loaded environment variables from %s", env_path)
        return
    logger.info("No .env file found. Using system environment variables.")


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        logging.getLogger('openai').setLevel(logging.WARNING)
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)
        logging.getLogger('asyncio').setLevel(logging.WARNING)
    else:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        logging.getLogger('openai').setLevel(logging.ERROR)
        logging.getLogger('httpx').setLevel(logging.ERROR)
        logging.getLogger('httpcore').setLevel(logging.ERROR)


def build_credentials(config: EngineConfig) -> CredentialRotationManager:
    """Credentials from $ATERM_HOME/credentials.yaml plus the provider's env keys."""
    manager = load_credentials(get_aterm_home() / CREDENTIALS_FILENAME, default_provider=config.provider)
    known = {c.id for c in manager.credentials(config.provider)}
    for entry in credentials_from_env(config.provider):
        if entry.id not in known:
            manager.add_credential(entry, config.provider)

    meta = get_provider(config.provider)
    if not manager.active_credentials(config.provider) and meta is not None and not meta.requires_api_key:
        manager.add_credential(
            CredentialPoolEntry(secret="no-key-required", label="local", id="local"),
            config.provider,
        )
    for entry in manager.active_credentials(config.provider):
        logger.debug("Credential %s: %s", entry.display_name, mask_secret(entry.secret))
    return manager


def build_engine(config: EngineConfig, workspace: Path) -> ExecutionEngine:
    base_url = resolve_provider_base_url(config.provider, explicit_base_url=config.base_url)
    if not base_url:
        raise ConfigValidationError([f"no base URL for provider '{config.provider}'"])
    backend = OpenAICompatibleBackend(
        base_url=base_url,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )
    return ExecutionEngine(
        backend,
        build_default_registry(workspace, shell_timeout=config.shell_timeout),
        model=config.effective_model,
        credentials=build_credentials(config),
        provider=config.provider,
        context_manager=ContextWindowManager(),
        knowledge=InMemoryKnowledgeStore(),
        max_tool_rounds=config.max_tool_rounds,
        max_attempts=config.max_attempts,
        exec_config=ToolExecConfig(max_result_chars=config.max_tool_result_chars),
        channel_size=config.channel_size,
        context_length=config.context_length,
    )


def _print_event(event) -> None:
    if isinstance(event, TextChunk):
        print(event.text)
    elif isinstance(event, ToolCallStarted):
        print(f"⚡ {event.name} {json.dumps(event.arguments, ensure_ascii=False)[:200]}")
    elif isinstance(event, ToolResultEvent):
        status = "❌" if event.error else "✅"
        print(f"  {status} {event.tool_name}: {event.display or event.content[:200]}")
    elif isinstance(event, Done):
        if event.aborted:
            print("⏹️  Session aborted")
    elif isinstance(event, ErrorEvent):
        print(f"❌ {event.kind}: {event.message}", file=sys.stderr)


async def run_session(engine: ExecutionEngine, script: Script, params: Dict[str, Any], query: str,
                      workspace: Path) -> ExecutionResult:
    intents = classify(query, detect_project_context(workspace)) if query else None
    if intents:
        logger.info("Intent: %s", ", ".join(label.value for label in intents))
    try:
        async for event in engine.stream(script, params, intents=intents):
            _print_event(event)
    finally:
        await engine.backend.aclose()
    return engine.last_result


def main(
    query: str = None,
    script: str = None,
    params: Any = None,
    workspace: str = ".",
    provider: str = None,
    model: str = None,
    base_url: str = None,
    max_tool_rounds: int = None,
    list_tools: bool = False,
    verbose: bool = False,
):
    """
    Run the assistant against a workspace.

    Args:
        query (str): A single user message. With --script it only feeds intent classification.
        script (str): Path to a script file (structured YAML or front-matter format).
        params (str): JSON object of script parameters, e.g. '{"file": "app.py"}'.
        workspace (str): Workspace root the tools operate in. Defaults to the current directory.
        provider (str): Provider id (openai, gemini, anthropic, mistral, ollama, custom),
                        or "auto" to pick one from the API keys in the environment.
                        Defaults to config.yaml / ATERM_PROVIDER, then openai.
        model (str): Model name. Defaults to the provider's default model.
        base_url (str): Override the provider's base URL.
        max_tool_rounds (int): Maximum tool-call rounds per exchange.
        list_tools (bool): Just list available tools and exit.
        verbose (bool): Enable verbose logging for debugging.
    """
    _configure_logging(verbose)
    _load_env()

    workspace_path = Path(workspace).expanduser().resolve()

    if list_tools:
        registry = build_default_registry(workspace_path)
        print(f"🔧 Available Tools ({len(registry)}):")
        for tool in registry:
            mode = "read-only" if tool.read_only else "writes"
            print(f"  • {tool.name:15} [{mode}] - {tool.description.splitlines()[0]}")
        return

    if not query and not script:
        print("❌ Provide --query or --script", file=sys.stderr)
        sys.exit(2)

    # fire already turns a JSON-looking argument into a dict
    parsed_params = params or {}
    if isinstance(parsed_params, str):
        try:
            parsed_params = json.loads(parsed_params)
        except json.JSONDecodeError as e:
            print(f"❌ --params is not valid JSON: {e}", file=sys.stderr)
            sys.exit(2)
    if not isinstance(parsed_params, dict):
        print("❌ --params must be a JSON object", file=sys.stderr)
        sys.exit(2)

    try:
        config = load_config(
            provider=detect_auto_provider() if provider == "auto" else provider,
            model=model,
            base_url=base_url,
            max_tool_rounds=max_tool_rounds,
        )
        loaded_script = load_script(script) if script else Script.single_message(query)
        engine = build_engine(config, workspace_path)
    except (ConfigValidationError, ScriptError, ValueError) as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)

    print(f"🤖 {config.provider} / {config.effective_model} in {workspace_path}")
    print("=" * 50)

    try:
        result = asyncio.run(run_session(engine, loaded_script, parsed_params, query or "", workspace_path))
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        sys.exit(130)

    print("=" * 50)
    print(f"📊 {result.backend_calls} backend call(s), {result.tool_calls} tool call(s), state={result.state.value}")
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    fire.Fire(main)
