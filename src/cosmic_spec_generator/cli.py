"""CLI entry point using Hydra.

Usage examples:
  cosmicspec mode=analyze input=docs/requirements.docx target_functions=40
  cosmicspec mode=spec input=docs/requirements.docx template_id=2 output=out/spec.md
  cosmicspec mode=parse input=reply.md output=out/cosmic.xlsx
  cosmicspec mode=diagram input=docs/requirements.docx
  cosmicspec mode=serve server.port=3001
  cosmicspec mode=spec input=req.docx server_url=http://localhost:3001
"""

from __future__ import annotations

import base64
import random
import sys
import warnings
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_endpoint_fallbacks
from .logging_config import RichCallbacks, console, print_analysis_summary, print_templates, setup_logging
from .models import ProjectConfig, StopReason

register_configs()

# Suppress Hydra 1.1 deprecation warning about automatic schema matching.
warnings.filterwarnings("ignore", category=UserWarning, message=r"(?s).*ConfigStore schema.*")

# ---------------------------------------------------------------------------
# Hydra DictConfig -> Pydantic ProjectConfig bridge
# ---------------------------------------------------------------------------


def _to_project_config(cfg: DictConfig) -> ProjectConfig:
    """Convert a Hydra DictConfig to a Pydantic ProjectConfig."""
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ProjectConfig.model_validate(container)
    return apply_endpoint_fallbacks(config)


def _make_context(config: ProjectConfig):
    from .service import AppContext

    rng = random.Random(config.seed) if config.seed is not None else None
    return AppContext(config=config, rng=rng)


def _make_backend(cfg: DictConfig, config: ProjectConfig):
    """Remote backend when ``server_url`` is set, in-process otherwise."""
    server_url = cfg.get("server_url", "")
    if server_url:
        from .client import RemoteBackend

        console.print(f"[dim]Using server {server_url}[/]")
        return RemoteBackend(server_url, timeout=config.timeout)

    from .service import LocalBackend

    return LocalBackend(_make_context(config))


def _require_input(cfg: DictConfig) -> Path:
    raw = cfg.get("input", "")
    if not raw:
        console.print("[red]input=<path> is required for this mode[/]")
        sys.exit(1)
    path = Path(raw)
    if not path.exists():
        console.print(f"[red]Input not found: {path}[/]")
        sys.exit(1)
    return path


def _output_path(cfg: DictConfig, input_path: Path, suffix: str) -> Path:
    raw = cfg.get("output", "")
    out = Path(raw) if raw else input_path.with_name(f"{input_path.stem}{suffix}")
    out.parent.mkdir(parents=True, exist_ok=True)
    return out


def _read_text(path: Path) -> str:
    from .tools.doc_reader import read_document

    return read_document(path).text


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _analyze_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    input_path = _require_input(cfg)
    document = _read_text(input_path)

    from .pipeline import RoundController
    from .tools.exporters import rows_to_xlsx

    controller = RoundController(
        _make_backend(cfg, config),
        target=config.target_functions,
        max_rounds=config.max_analysis_rounds,
        cooldown=config.analysis_cooldown,
        callbacks=RichCallbacks(),
    )
    result = controller.run(document)
    print_analysis_summary(result)

    if result.rows:
        out = _output_path(cfg, input_path, "_cosmic.xlsx")
        out.write_bytes(rows_to_xlsx(result.rows))
        console.print(f"  Excel: {out}")
        replies = out.with_suffix(".md")
        replies.write_text("\n\n".join(controller.replies), encoding="utf-8")
        console.print(f"  Replies: {replies}")

    if result.stop_reason is StopReason.FAILED:
        console.print(f"\n[bold red]Analysis failed:[/] {result.error}")
        sys.exit(1)


def _spec_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    input_path = _require_input(cfg)

    from .agents.chapter_writer import get_template
    from .pipeline import ChapterPipeline
    from .tools.doc_reader import read_document

    upload = read_document(input_path)
    try:
        template = get_template(config.template_id)
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    pipeline = ChapterPipeline(
        _make_backend(cfg, config),
        template,
        upload.text,
        images=upload.images,
        delay=config.chapter_delay,
        callbacks=RichCallbacks(),
    )
    result = pipeline.run()

    out = _output_path(cfg, input_path, "_spec.md")
    out.write_text(result.document, encoding="utf-8")
    console.print(f"\n  Markdown: {out} ({len(result.document)} chars)")
    console.print(f"  Rounds: {result.rounds_completed}/{result.total_rounds}")

    if result.error:
        console.print(f"[bold red]Generation stopped early:[/] {result.error}")
        sys.exit(1)
    console.print("[bold green]Specification generated.[/]")


def _parse_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    input_path = _require_input(cfg)

    from .service import parse_table
    from .tools.exporters import rows_to_xlsx
    from .tools.table_parser import distinct_processes

    rows = parse_table(_make_context(config), input_path.read_text(encoding="utf-8"))
    if not rows:
        console.print("[red]No valid Markdown table found.[/]")
        sys.exit(1)
    out = _output_path(cfg, input_path, ".xlsx")
    out.write_bytes(rows_to_xlsx(rows))
    console.print(f"[green]{len(rows)} rows, {distinct_processes(rows)} functional processes -> {out}[/]")


def _diagram_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    input_path = _require_input(cfg)

    from .errors import LLMNotConfiguredError
    from .service import generate_diagram

    try:
        result, _ = generate_diagram(_make_context(config), _read_text(input_path), "svg")
    except LLMNotConfiguredError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)
    source = _output_path(cfg, input_path, "_architecture.mmd")
    source.write_text(result.mermaid_code, encoding="utf-8")
    console.print(f"  Mermaid: {source} ({result.attempts} render attempts)")
    if result.placeholder_used:
        console.print("[yellow]  Rendering fell back to the placeholder diagram[/]")
    if result.image:
        svg = source.with_suffix(".svg")
        svg.write_bytes(base64.b64decode(result.image.split(",", 1)[1]))
        console.print(f"  Image: {svg}")


def _serve_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)

    import uvicorn

    from .server import create_app

    app = create_app(_make_context(config))
    console.print(f"[bold]Serving on http://{config.server.host}:{config.server.port}[/]")
    if not config.endpoint.api_key:
        console.print("[yellow]No API key configured; POST /api/config before using the AI endpoints[/]")
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)


def _templates_mode(cfg: DictConfig) -> None:
    from .agents.chapter_writer import TEMPLATES

    print_templates(list(TEMPLATES.values()))


_MODE_DISPATCH: dict[str, Any] = {
    "analyze": _analyze_mode,
    "spec": _spec_mode,
    "parse": _parse_mode,
    "diagram": _diagram_mode,
    "serve": _serve_mode,
    "templates": _templates_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path=None, config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "analyze")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
