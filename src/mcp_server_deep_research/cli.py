"""CLI interface for the deep research MCP server."""

import asyncio
from pathlib import Path

import typer

from .config import ResearchSettings, settings
from .exceptions import LLMProviderError
from .providers import get_llm_from_settings

app = typer.Typer(help="Deep research CLI powered by browser-use")


def _prompt_for_decision(action) -> str:
    """Ask on the terminal for one of a pending action's option values."""
    print(f"\n{action.description}")
    for option in action.options:
        detail = f" - {option.description}" if option.description else ""
        print(f"  [{option.value}] {option.label}{detail}")
    default = action.options[0].value if action.options else ""
    return typer.prompt("Your choice", default=default)


@app.command()
def research(
    question: str = typer.Argument(..., help="Question to research"),
    max_iterations: int = typer.Option(None, "--max-iterations", "-n", help="Maximum research iterations"),
    max_pages: int = typer.Option(None, "--max-pages", "-p", help="Pages read per iteration"),
    engine: list[str] = typer.Option(None, "--engine", "-e", help="Search engine (repeatable): google, bing, baidu"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Approve the plan, pages and each iteration"),
    page_title: str = typer.Option(None, "--page-title", help="Title of the page the question is about"),
    page_url: str = typer.Option(None, "--page-url", help="URL of the page the question is about"),
    save_to: str = typer.Option(None, "--save", "-s", help="File path to save the Markdown report"),
) -> None:
    """Research a question on the web and print a cited report."""
    from .research.adapters import LLMTextGenerator, StaticPageContext
    from .research.browser import BrowserResearchAdapter, build_browser_profile
    from .research.machine import ResearchCallbacks, ResearchMachine
    from .research.report import export_as_markdown

    overrides = {
        "max_iterations": max_iterations,
        "max_pages_per_iteration": max_pages,
        "preferred_engines": engine or None,
    }
    if interactive:
        overrides.update(require_plan_approval=True, require_page_approval=True, interactive_mode=True)
    options = ResearchSettings.model_validate(
        {**settings.research.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
    )

    async def _research() -> str:
        try:
            llm = get_llm_from_settings(settings.llm)
        except LLMProviderError as e:
            return f"Error: {e}"

        machine: ResearchMachine | None = None

        async def on_pending(action) -> None:
            # Answer from a separate task so the run can start waiting on the gate first
            async def answer() -> None:
                decision = await asyncio.to_thread(_prompt_for_decision, action)
                if machine is not None:
                    machine.respond(decision)

            asyncio.get_running_loop().create_task(answer())

        def on_progress(progress) -> None:
            print(f"[{progress.percentage:3d}%] {progress.current_task}")

        callbacks = ResearchCallbacks(on_progress_update=on_progress, on_pending_action=on_pending)
        profile = build_browser_profile(settings.browser)

        async with BrowserResearchAdapter(profile, load_timeout=options.fetch_timeout) as browser:
            machine = ResearchMachine(
                LLMTextGenerator(llm, timeout=options.generation_timeout),
                browser,
                browser,
                options=options,
                callbacks=callbacks,
                page_context_provider=StaticPageContext(title=page_title, url=page_url),
            )
            result = await machine.run(question)

        if result.cancelled:
            return "Research cancelled."
        if not result.success or result.report is None:
            return f"Error: {result.error}"

        markdown = export_as_markdown(result.report)
        if save_to:
            path = Path(save_to).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(markdown, encoding="utf-8")
            print(f"Saved report to {path}")
        return markdown

    print(asyncio.run(_research()))


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Provider: {settings.llm.provider}")
    print(f"Model: {settings.llm.model_name}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"Headless: {settings.browser.headless}")
    print(f"Proxy: {settings.browser.proxy_server or '(none)'}")
    print(f"Max Iterations: {settings.research.max_iterations}")
    print(f"Pages per Iteration: {settings.research.max_pages_per_iteration}")
    print(f"Engines: {', '.join(settings.research.preferred_engines)}")
    print(f"Language: {settings.research.language}")
    print(f"Results Dir: {settings.get_results_dir()}")


@app.command()
def server() -> None:
    """Start the MCP server with the configured transport."""
    from .server import main

    main()


if __name__ == "__main__":
    app()
