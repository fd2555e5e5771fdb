"""Chronograph - interactive graph memory shell."""

import asyncio
import logging
import os
import time

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

# Load environment variables from .env file
load_dotenv()

from src.chronograph import GraphManager, GraphManagerConfig
from src.chronograph.errors import GraphMemoryError
from src.chronograph.llm import LLMProvider
from src.chronograph.models import EpisodeContent


console = Console()

HELP = (
    "[dim]Type a message to remember it. Commands: "
    "'search <query>', 'communities', 'path <id> <id>', 'history <id>', "
    "'timeline', 'stats', 'provider', 'clear', 'quit'[/dim]\n"
)


def print_welcome(llm: LLMProvider, config: GraphManagerConfig, session: str):
    """Print welcome message."""
    provider_info = llm.get_provider_info()
    encoder = config.encoder_config

    console.print(Panel.fit(
        "[bold blue]Chronograph[/bold blue] - Bi-temporal Graph Memory\n"
        f"Session: {session}\n"
        f"Provider: {provider_info['provider']}\n"
        f"Model: {provider_info['model']}\n"
        f"Embeddings: {encoder.embedding_model if encoder else 'default'}",
        title="Welcome"
    ))
    console.print(HELP)


def print_results(results):
    table = Table(title="Search results")
    table.add_column("Score", justify="right")
    table.add_column("Id")
    table.add_column("Text")
    table.add_column("Why", style="dim")
    for r in results:
        text = r.node.text if r.node else ""
        table.add_row(f"{r.score:.3f}", r.id, text[:60], r.explanation)
    console.print(table)


async def run_command(manager: GraphManager, llm: LLMProvider, session: str, user_input: str) -> bool:
    """Handle one line of input. Returns False to stop."""
    cmd, _, arg = user_input.strip().partition(" ")
    cmd = cmd.lower()

    if cmd in ("quit", "exit"):
        console.print("[dim]Goodbye![/dim]")
        return False

    if cmd == "stats":
        console.print(Panel(str(manager.get_stats()), title="Graph Stats"))
    elif cmd == "provider":
        console.print(Panel(str(llm.get_provider_info()), title="Provider Info"))
    elif cmd == "clear":
        await manager.clear()
        console.print("[dim]Memory cleared.[/dim]")
    elif cmd == "search" and arg:
        print_results(await manager.search(arg))
    elif cmd == "communities":
        communities = await manager.detect_communities()
        for c in communities:
            console.print(f"[cyan]{c.id}[/cyan] {c.label} ({len(c.members)} members, confidence {c.confidence:.2f})")
        if not communities:
            console.print("[dim]No communities yet.[/dim]")
    elif cmd == "path" and len(arg.split()) == 2:
        source, target = arg.split()
        explained = await manager.find_path(source, target)
        if explained.path is None:
            console.print("[yellow]No path found.[/yellow]")
        else:
            console.print(" -> ".join(explained.path.node_ids))
            console.print(explained.explanation)
    elif cmd == "history" and arg:
        analysis = await manager.analyze_temporal_changes(arg)
        console.print(Panel(str(analysis.inferred.model_dump()), title=f"History of {arg}"))
    elif cmd == "timeline":
        for node in await manager.get_episode_timeline(0.0, time.time()):
            console.print(f"[dim]{time.ctime(node.valid_at)}[/dim] {node.text}")
    else:
        result = await manager.ingest([
            EpisodeContent(body=user_input, timestamp=time.time(), session_id=session),
        ])
        console.print(
            f"[dim]Stored {len(result.episodes)} episode, {len(result.entities)} new entities, "
            f"{len(result.edges)} edges[/dim]"
        )
        if result.degraded:
            console.print("[yellow]Extraction unavailable; stored the message only.[/yellow]")
    return True


async def run_interactive(manager: GraphManager, llm: LLMProvider, session: str):
    """Run interactive session."""
    while True:
        try:
            user_input = Prompt.ask("[bold green]You[/bold green]")
            if not user_input.strip():
                continue
            if not await run_command(manager, llm, session, user_input):
                break
        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted. Type 'quit' to exit.[/dim]")
        except GraphMemoryError as e:
            console.print(f"[red]Error: {e}[/red]")
            if os.getenv("DEBUG"):
                import traceback
                traceback.print_exc()


async def main():
    """Main entry point."""
    logging.basicConfig(level=logging.DEBUG if os.getenv("DEBUG") else logging.WARNING)

    config = GraphManagerConfig.from_env()
    llm = LLMProvider(config.llm_config)
    manager = GraphManager(config, llm=llm)
    session = os.getenv("CHRONOGRAPH_SESSION", "cli")

    # Single message mode
    prompt = os.getenv("PROMPT")
    if prompt:
        await run_command(manager, llm, session, prompt)
        return

    print_welcome(llm, config, session)
    await run_interactive(manager, llm, session)


if __name__ == "__main__":
    asyncio.run(main())
