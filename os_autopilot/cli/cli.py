# os_autopilot/cli/cli.py
import json
import threading

import click

from os_autopilot.agents.classifier import CommandClassifier
from os_autopilot.core.config import load_config
from os_autopilot.core.orchestrator import Orchestrator
from os_autopilot.core.tal import CommandSource
from os_autopilot.utils.logger import setup_logging


@click.group()
@click.option("--config", "config_path", default=None, help="Path to autopilot.yaml")
@click.pass_context
def cli(ctx, config_path):
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _orchestrator(ctx) -> Orchestrator:
    config = load_config(ctx.obj.get("config_path"))
    setup_logging(config.log_level)
    return Orchestrator(config=config)


@cli.command()
@click.argument("text")
@click.option("--source", type=click.Choice([s.value for s in CommandSource]), default="manual")
@click.pass_context
def run(ctx, text, source):
    """Run a single command and print the outcome."""
    orch = _orchestrator(ctx)
    try:
        outcome = orch.run(text, CommandSource(source))
    finally:
        orch.shutdown()
    click.echo(outcome.model_dump_json(indent=2))
    ctx.exit(0 if outcome.success else 1)


@cli.command()
@click.argument("task")
@click.argument("step", required=False)
@click.pass_context
def visual(ctx, task, step):
    """Perform one vision-guided UI action towards TASK."""
    orch = _orchestrator(ctx)
    try:
        outcome = orch.vision.perform_visual_guided_action(task, step or task)
    finally:
        orch.shutdown()
    click.echo(outcome.model_dump_json(indent=2))
    ctx.exit(0 if outcome.success else 1)


@cli.command()
@click.argument("text")
def classify(text):
    """Show how a command would be classified (no side effects)."""
    result = CommandClassifier().classify(text)
    click.echo(json.dumps(result.model_dump(mode="json"), indent=2))


@cli.command()
@click.pass_context
def listen(ctx):
    """Read commands line by line from stdin and stream task events."""
    orch = _orchestrator(ctx)
    sub = orch.subscribe()
    done = threading.Event()

    def _print_events():
        while not done.is_set() or not sub.queue.empty():
            event = sub.get(timeout=0.2)
            if event is not None:
                click.echo(f"[{event.name}] {event.model_dump_json(exclude={'timestamp'})}")

    printer = threading.Thread(target=_print_events, daemon=True)
    printer.start()
    pending = []
    try:
        for line in click.get_text_stream("stdin"):
            line = line.strip()
            if line:
                pending.append(orch.submit(line, CommandSource.MANUAL))
        for future in pending:
            future.exception()
    finally:
        orch.shutdown()
        done.set()
        printer.join(timeout=2)
        sub.close()


if __name__ == "__main__":
    cli()
