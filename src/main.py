import argparse
import logging
import sys

from .common.config_loader import SessionChatConfig, YamlConfigStore, load_settings
from .engine.conversation import HistoryMessage, apply_history_window
from .engine.guardrail_config import GuardrailSettingsLoader
from .engine.guardrail_meta import serialize_guardrail_meta
from .engine.intent_router import normalize_question, route_question
from .engine.pipeline import resolve_turn_settings
from .engine.types import GuardrailEngineError
from .services.chat import prepare_chat_context


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Guardrail context engine CLI")
    parser.add_argument(
        "--question",
        "-q",
        default="",
        help="Ask a single question and exit (default: interactive session)",
    )
    parser.add_argument(
        "--preset",
        default="",
        help="Session preset: default, fast or highRecall",
    )
    parser.add_argument(
        "--safe-mode",
        action="store_true",
        help="Cap context and history token budgets",
    )
    parser.add_argument(
        "--route-only",
        action="store_true",
        help="Only normalize, route and window history (no embedding or retrieval calls)",
    )
    parser.add_argument(
        "--show-meta",
        action="store_true",
        help="Print the serialized guardrail metadata record",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def _route_only(history: list[HistoryMessage], session: SessionChatConfig, safe_mode: bool) -> None:
    settings = load_settings()
    loader = GuardrailSettingsLoader(YamlConfigStore(), ttl_ms=settings.guardrail_settings_ttl_ms)
    resolved = resolve_turn_settings(loader, session, safe_mode=safe_mode, default_preset=settings.default_preset)
    config = resolved.guardrails
    routed = route_question(normalize_question(history[-1].content), history, config)
    window = apply_history_window(history, config)

    print(f"\nINTENT: {routed.intent.value} (confidence={routed.confidence}, reason={routed.reason})")
    print(f"PRESET: {resolved.preset_id}")
    print(f"LANGUAGE: {routed.question.language.value}")
    print(
        f"BUDGETS: context={config.rag_context_token_budget} history={config.history_token_budget} "
        f"top_k={config.rag_top_k} summary={'on' if config.summary.enabled else 'off'}"
    )
    print(f"HISTORY: preserved={len(window.preserved)} trimmed={len(window.trimmed)} tokens={window.token_count}")
    if window.summary_text:
        print(f"SUMMARY:\n{window.summary_text}")


def _full(history: list[HistoryMessage], session: SessionChatConfig, safe_mode: bool, show_meta: bool) -> bool:
    try:
        result = prepare_chat_context(history, session=session, safe_mode=safe_mode)
    except GuardrailEngineError as err:
        print(f"Unable to prepare context: {err}")
        return False

    routed = result.routed
    print(f"\nINTENT: {routed.intent.value} (confidence={routed.confidence}, reason={routed.reason})")
    print(f"PRESET: {result.preset_id}")
    print(
        f"CONTEXT: included={len(result.context.included)} dropped={result.context.dropped} "
        f"tokens={result.context.total_tokens} insufficient={result.context.insufficient}"
    )
    if result.context.context_block:
        print("\nCONTEXT BLOCK:")
        print(result.context.context_block)
    if show_meta:
        print("\nMETA:")
        print(serialize_guardrail_meta(result.meta))
    return True


def run(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_settings()

    session = SessionChatConfig(preset_id=args.preset or None, safe_mode=args.safe_mode)
    history: list[HistoryMessage] = []

    def _turn(question: str) -> None:
        history.append(HistoryMessage(role="user", content=question))
        if args.route_only:
            _route_only(history, session, args.safe_mode)
        elif not _full(history, session, args.safe_mode, args.show_meta):
            # Failed turns are not kept in the conversation
            history.pop()

    if args.question:
        _turn(args.question)
        return

    if not sys.stdin.isatty():
        raise SystemExit("Interactive mode needs a terminal; use --question for one-shot runs.")

    print("Guardrail CLI ready. Type 'quit' to exit.")

    while True:
        question = input("\nEnter a question: ")
        if question.strip().lower() in {"quit", "exit"}:
            print("Goodbye!")
            break
        _turn(question)


if __name__ == "__main__":
    run()
