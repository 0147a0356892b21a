import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from coaching_sync.app_config import load_json_config, parse_app_config, resolve_runtime_env
from coaching_sync.bootstrap import AppRuntime, bootstrap_runtime
from coaching_sync.logging_config import memory_records
from coaching_sync.markers import display_content, parse_markers
from coaching_sync.models import Message, Role, SessionKey
from coaching_sync.pagination import DaySeparator, group_by_day

_HELP = (
    "Commands: /more (older messages), /reset, /breakout <title>, /back (default session), "
    "/retry, /card <type> <occurrence> <state>, /log [count], exit"
)


def format_entry(entry: Message | DaySeparator) -> str:
    if isinstance(entry, DaySeparator):
        return f"---- {entry.day.isoformat()} ----"
    speaker = "you" if entry.role is Role.USER else "coach"
    text = display_content(entry.content) or "..."
    cards = parse_markers(entry.content)
    if cards:
        text += "\n" + "\n".join(f"  [{m.type_name}#{m.occurrence} {m.state or ''}]".rstrip() for m in cards)
    if entry.is_error:
        text += "\n  (failed - type /retry)"
    return f"{speaker}> {text}"


def print_window(runtime: AppRuntime) -> None:
    coordinator = runtime.coordinator
    if coordinator.has_more:
        print(f"({len(coordinator.full_history) - coordinator.displayed_count} older messages - /more)")
    for entry in group_by_day(coordinator.displayed()):
        print(format_entry(entry))
    print()


def _last_assistant(runtime: AppRuntime, *, errors_only: bool = False) -> Message | None:
    for message in reversed(runtime.coordinator.full_history):
        if message.role is not Role.ASSISTANT:
            continue
        if errors_only and not message.is_error:
            continue
        return message
    return None


async def handle_command(runtime: AppRuntime, default_key: SessionKey, command: str) -> None:
    coordinator = runtime.coordinator
    name, _, argument = command.partition(" ")
    argument = argument.strip()

    if name == "/more":
        before = coordinator.displayed_count
        await coordinator.load_more()
        if coordinator.displayed_count == before:
            print("(nothing more to load right now)\n")
            return
        print_window(runtime)
    elif name == "/reset":
        await coordinator.reset_session()
        print_window(runtime)
    elif name == "/breakout":
        breakout = await coordinator.spawn_breakout(title=argument or None)
        await coordinator.open_session(breakout, title=argument or None)
        print(f"Breakout session {breakout.session_id}\n")
        print_window(runtime)
    elif name == "/back":
        await coordinator.open_session(default_key)
        print_window(runtime)
    elif name == "/retry":
        failed = _last_assistant(runtime, errors_only=True)
        if failed is None:
            print("(no failed reply to retry)\n")
            return
        reply = await runtime.conversation.resend(failed.id)
        print(format_entry(reply) + "\n")
    elif name == "/card":
        parts = argument.split()
        target = _last_assistant(runtime)
        if len(parts) != 3 or target is None:
            print("usage: /card <type> <occurrence> <state>\n")
            return
        updated = coordinator.update_marker(target.id, parts[0], int(parts[1]), state=parts[2])
        print(format_entry(updated) + "\n")
    elif name == "/log":
        records = memory_records()
        if records is None:
            print("(no memory log consumer configured)\n")
            return
        count = max(1, int(argument)) if argument else 20
        print("\n".join(records[-count:]) + "\n")
    else:
        print(_HELP + "\n")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)

    try:
        default_key = SessionKey.default(app.user_id)
    except ValueError as ex:
        logger.error(f"Invalid UserId in config.json: {ex}")
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)
    try:
        await runtime.coordinator.open_session(default_key)

        print("coaching-sync (type 'exit' to quit, '/help' for commands)")
        if runtime.log_descriptions:
            print(f"Logging: {', '.join(runtime.log_descriptions)}")
        print()
        print_window(runtime)

        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if trimmed.startswith("/"):
                    await handle_command(runtime, default_key, trimmed)
                    continue
                reply = await runtime.conversation.send_message(trimmed)
                print(format_entry(reply) + "\n")
                if runtime.conversation.completed:
                    print("(session complete - /breakout <title> to go deeper)\n")
            except ValueError as ex:
                print(f"({ex})\n")
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
