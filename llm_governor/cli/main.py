"""
CLI interface for LLM Governor.

Provides command-line access to budget planning, cost estimation,
timeout policies, config validation and governed chat.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from llm_governor.config.loader import GovernorConfig, load_governor_config
from llm_governor.core.capabilities import DEFAULT_MODEL, ModelCapabilityRegistry
from llm_governor.core.errors import GovernorError
from llm_governor.core.planner import plan as plan_budget
from llm_governor.core.pricing import estimate_cost
from llm_governor.core.timeouts import AdaptiveTimeoutController, Phase
from llm_governor.log import setup_logging
from llm_governor.sdk.openai_client import ResilientCompletionClient

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(path: Optional[Path]) -> GovernorConfig:
    if path is None:
        return GovernorConfig.default()
    return load_governor_config(str(path))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """LLM Governor CLI."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)
    if ctx.invoked_subcommand is None:
        console.print("LLM Governor - Use --help to see available commands")


@app.command()
def plan(
    prompt: Optional[str] = typer.Argument(None, help="User prompt to plan for"),
    file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        help="Read the prompt from a file"
    ),
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model name"),
    max_tokens: Optional[int] = typer.Option(
        None,
        "--max-tokens",
        help="Requested output tokens"
    ),
    system: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Governor config file")
):
    """Show the token budget plan for a prompt."""
    try:
        if file is not None:
            prompt = file.read_text(encoding="utf-8")
        if not prompt:
            console.print("[red]Error:[/] provide a prompt or --file")
            sys.exit(EXIT_CODE_FAIL)

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        registry = ModelCapabilityRegistry(_load_config(config).models.values())
        capabilities = registry.get(model)
        result = plan_budget(messages, capabilities, max_tokens)
    except (GovernorError, OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Budget plan for {model}")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Capability source", capabilities.source.value)
    table.add_row("Context window", f"{capabilities.context_window:,}")
    table.add_row("Input tokens", f"{result.input_tokens:,}")
    table.add_row("Max output tokens", f"{result.max_tokens:,}")
    table.add_row("Remaining context", f"{result.remaining_context:,}")
    table.add_row("Strategy", result.strategy.value)
    table.add_row("Needs truncation", _yes_no(result.needs_truncation))
    table.add_row("Can continue", _yes_no(result.can_continue))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model name"),
    input_tokens: int = typer.Option(0, "--input", "-i", help="Input tokens"),
    output_tokens: int = typer.Option(0, "--output", "-o", help="Output tokens"),
    reasoning_tokens: int = typer.Option(0, "--reasoning", "-r", help="Reasoning tokens"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Governor config file")
):
    """Estimate the cost of a request."""
    try:
        governor_config = _load_config(config)
        capabilities = ModelCapabilityRegistry(governor_config.models.values()).get(model)
        cost = estimate_cost(capabilities, input_tokens, output_tokens, reasoning_tokens)
    except (GovernorError, OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Cost estimate for {model}")
    table.add_column("Component")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_row("Input", f"{cost.input_tokens:,}", _format_currency(cost.input_cost))
    table.add_row("Output", f"{cost.output_tokens:,}", _format_currency(cost.output_cost))
    table.add_row("Reasoning", f"{cost.reasoning_tokens:,}", _format_currency(cost.reasoning_cost))
    table.add_row("[bold]Total[/]", "", f"[bold]{_format_currency(cost.total_cost)}[/]")
    console.print(table)

    limit = governor_config.budget.request_max_usd
    if cost.total_cost > limit:
        console.print(f"[yellow]Exceeds per-request limit of {_format_currency(limit)}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def timeouts(
    model: str = typer.Argument(DEFAULT_MODEL, help="Model name"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Governor config file")
):
    """Show phase timeouts and retry policy for a model."""
    try:
        controller = AdaptiveTimeoutController(_load_config(config).timeouts)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    policy = controller.get_policy(model)
    recommended = controller.get_recommended_config(model)

    table = Table(title=f"Timeouts for {model}")
    table.add_column("Phase")
    table.add_column("Timeout", justify="right")
    table.add_column("Max backoff", justify="right")
    for phase in Phase:
        timeout = controller.get_timeout(model, phase)
        table.add_row(
            phase.value,
            f"{timeout:.0f}s",
            f"{timeout * policy.max_backoff_factor:.0f}s"
        )
    console.print(table)
    console.print(
        f"Max retries: {policy.max_retries}, backoff x{policy.backoff_multiplier}"
    )
    if recommended != policy:
        console.print(
            f"[yellow]Recommended streaming timeout: {recommended.streaming:.0f}s[/]"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command("check-config")
def check_config(
    path: Path = typer.Argument(..., help="Governor config file to validate")
):
    """Validate a governor configuration file."""
    try:
        governor_config = load_governor_config(str(path))
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]✗ Invalid config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    budget = governor_config.budget
    console.print(f"[green]✓[/] {path} is valid")
    console.print(
        f"Limits: request {_format_currency(budget.request_max_usd)}, "
        f"user/day {_format_currency(budget.user_daily_max_usd)}, "
        f"site/hour {_format_currency(budget.site_hourly_max_usd)}"
    )
    console.print(f"Models: {', '.join(sorted(governor_config.models))}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def chat(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model name"),
    user: str = typer.Option("cli", "--user", "-u", help="Caller identity"),
    max_tokens: Optional[int] = typer.Option(
        None,
        "--max-tokens",
        help="Requested output tokens"
    ),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Governor config file")
):
    """
    Stream a governed completion.

    The API key is read from DEEPSEEK_API_KEY or OPENAI_API_KEY.
    """
    try:
        client = ResilientCompletionClient.from_config(_load_config(config))
        asyncio.run(_stream_chat(client, prompt, model, user, max_tokens))
    except GovernorError as e:
        console.print(f"\n[red]Error:[/] {e.user_message}")
        console.print(f"[dim]{e.message}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


async def _stream_chat(
    client: ResilientCompletionClient,
    prompt: str,
    model: str,
    user: str,
    max_tokens: Optional[int]
) -> None:
    handle = await client.chat(
        [{"role": "user", "content": prompt}],
        model,
        user_id=user,
        max_tokens=max_tokens,
        stream=True
    )
    async for delta in handle:
        console.out(delta, end="", highlight=False)
    console.print()

    result = handle.result
    status = client.guardian.get_budget_status(user)
    console.print(
        f"\n[dim]{result.usage.total_tokens:,} tokens, "
        f"cost {_format_cost(result.cost.total_cost)}, "
        f"{result.segments} segment(s), {result.latency:.1f}s[/]"
    )
    if result.stopped_reason:
        console.print(f"[yellow]Stopped early: {result.stopped_reason}[/]")
    console.print(
        f"[dim]Spent today: {_format_cost(status.user_spent_today_usd)}, "
        f"site this hour: {_format_cost(status.site_spent_this_hour_usd)}[/]"
    )


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


def _format_cost(amount: float) -> str:
    return f"${amount:,.6f}"


if __name__ == "__main__":
    app()
