"""CLI entry point for termdeck."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
import uuid

import typer

from termdeck.config import TermdeckConfig

app = typer.Typer(
    name="termdeck",
    help="Spawn and supervise shell and agent terminal sessions.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


@app.command()
def resolve(
    agent: bool = typer.Option(False, "--agent", help="Resolve an agent session."),
    shell: str | None = typer.Option(None, "--shell", help="Shell override path."),
    variant: str | None = typer.Option(
        None, "--variant", help="Agent variant (claude, happy)."
    ),
    show_env: bool = typer.Option(False, "--env", help="Also print the environment."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config JSON file."
    ),
) -> None:
    """Show which executable a new session would run."""
    from termdeck.pty.resolver import ExecutableResolver, shell_path_for
    from termdeck.pty.session import SessionKind

    setup_logging(verbose)
    config = TermdeckConfig.load(config_file)
    terminal = config.terminal

    resolver = ExecutableResolver(
        env_snapshot_timeout=terminal.env_snapshot_timeout,
        term_name=terminal.term_name,
    )
    kind = SessionKind.AGENT if agent else SessionKind.INTERACTIVE
    override = shell or shell_path_for(terminal.shell, terminal.custom_shell_path)
    resolution = resolver.resolve(
        kind,
        override=override,
        agent_variant=variant or terminal.agent_variant,
    )

    typer.echo(f"Kind: {kind.value}")
    typer.echo(f"Executable: {resolution.path}")
    typer.echo(f"Args: {' '.join(resolution.args) or '(none)'}")
    if show_env:
        typer.echo("---")
        for key in sorted(resolution.env):
            typer.echo(f"{key}={resolution.env[key]}")


@app.command()
def run(
    cwd: str = typer.Option(".", "--cwd", help="Working directory."),
    agent: bool = typer.Option(False, "--agent", help="Run an agent session."),
    shell: str | None = typer.Option(None, "--shell", help="Shell override path."),
    variant: str | None = typer.Option(
        None, "--variant", help="Agent variant (claude, happy)."
    ),
    piped: bool = typer.Option(False, "--piped", help="Force the piped backend."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config JSON file."
    ),
) -> None:
    """Run one session, forwarding stdin lines and printing its output."""
    setup_logging(verbose)
    config = TermdeckConfig.load(config_file)
    if piped:
        config.terminal.native_enabled = False

    cwd = os.path.abspath(cwd)
    if not os.path.isdir(cwd):
        typer.echo(f"Error: Directory not found: {cwd}", err=True)
        raise typer.Exit(1)

    code = asyncio.run(_run_session(config, cwd, agent, shell, variant))
    # Negative codes mean the process died from a signal
    raise typer.Exit(0 if not code else 1 if code < 0 else code)


async def _run_session(
    config: TermdeckConfig,
    cwd: str,
    agent: bool,
    shell: str | None,
    variant: str | None,
) -> int | None:
    from termdeck.power import SuspendInhibitor
    from termdeck.pty.manager import TerminalManager
    from termdeck.pty.session import SessionKind
    from termdeck.session.wire import EventType, Wire

    wire = Wire()
    events = wire.subscribe()
    manager = TerminalManager(sink=wire, config=config)
    inhibitor = SuspendInhibitor()

    session_id = uuid.uuid4().hex[:8]
    kind = SessionKind.AGENT if agent else SessionKind.INTERACTIVE
    if not manager.create(session_id, cwd, kind, shell_override=shell, agent_variant=variant):
        typer.echo("Error: could not start a session", err=True)
        return 1

    loop = asyncio.get_running_loop()

    def stdin_closed() -> None:
        manager.kill(session_id)
        wire.close()

    def read_stdin() -> None:
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(manager.write, session_id, line)
            loop.call_soon_threadsafe(stdin_closed)
        except RuntimeError:
            # Loop already closed
            return

    threading.Thread(target=read_stdin, name="termdeck-stdin", daemon=True).start()
    exit_code: int | None = None
    try:
        while True:
            event = await events.get()
            if event is None:
                break
            if event.type is EventType.OUTPUT:
                sys.stdout.write(event.data["data"])
                sys.stdout.flush()
            elif event.type is EventType.SESSION_COUNT:
                inhibitor.update(event.data["count"])
            elif event.type is EventType.EXIT:
                exit_code = event.data["exit_code"]
                break
    finally:
        manager.dispose()
        inhibitor.release()
    return exit_code


def main() -> None:
    app()


if __name__ == "__main__":
    main()
