"""CLI interface for flexlink."""

from pathlib import Path
from typing import Any, Optional

import pandas as pd
import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import RunConfig
from .evaluation import evaluate_links
from .exceptions import ConfigurationError, FlexLinkError
from .guard import schema_from_mapping
from .logging import LogLevel, configure_logging
from .observers import IterationReport, IterationWriter, ParameterLogger
from .records import LinkageData, encode_frames
from .schema import UnstablePIV
from .stem import StEM, StEMResult
from .synthetic import SyntheticConfig, generate

app = typer.Typer(
    name="flexlink",
    help="Probabilistic record linkage with unstable identifying variables",
    add_completion=False,
)
console = Console()

_RUN_KEYS = set(RunConfig.model_fields)


def _set_log_level(level: str) -> None:
    level = level.upper()
    if level not in LogLevel.__args__:
        raise typer.BadParameter(f"unknown log level {level!r}")
    configure_logging(level)


def load_config(path: Path) -> tuple[dict[str, Any], dict[str, Any], Optional[str]]:
    """Split a YAML configuration into schema settings, run settings and the time column."""
    with open(path, encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} does not hold a mapping")
    run = dict(raw.pop("run", None) or {})
    unknown = set(run) - _RUN_KEYS
    if unknown:
        raise ConfigurationError(f"unknown run settings: {sorted(unknown)}")
    time_column = raw.pop("time_column", None)
    return raw, run, time_column


def _resolve_cardinalities(settings: dict[str, Any], observed: dict[str, int]) -> list[int]:
    names = list(settings.get("pivs_config") or settings.get("PIVs_config") or {})
    declared = settings.get("nvalues", settings.get("Nvalues"))
    if declared is None:
        return [observed[n] for n in names]
    if isinstance(declared, dict):
        declared = [declared.get(n) for n in names]
    if len(declared) != len(names):
        raise ConfigurationError(f"nvalues has {len(declared)} entries for {len(names)} PIVs")
    resolved = []
    for name, k in zip(names, declared):
        if k is None:
            k = observed[name]
        if k < observed[name]:
            raise ConfigurationError(
                f"declared cardinality {k} is below the {observed[name]} distinct values found",
                piv=name,
            )
        resolved.append(int(k))
    return resolved


def load_data(
    file_a: Path,
    file_b: Path,
    settings: dict[str, Any],
    time_column: Optional[str],
    auto_fix: bool = False,
) -> LinkageData:
    """Read both CSVs, encode the PIV columns jointly and build the linkage data."""
    frame_a = pd.read_csv(file_a)
    frame_b = pd.read_csv(file_b)
    names = list(settings.get("pivs_config") or settings.get("PIVs_config") or {})
    if not names:
        raise ConfigurationError("configuration has no PIVs_config / pivs_config entry")
    coded_a, coded_b, observed = encode_frames(frame_a, frame_b, names)

    cardinalities = _resolve_cardinalities(settings, observed)
    settings = {k: v for k, v in settings.items() if k != "Nvalues"}
    settings["nvalues"] = cardinalities
    schema = schema_from_mapping(settings, auto_fix=auto_fix)
    return LinkageData.from_frames(coded_a, coded_b, schema, time_column=time_column)


class _ProgressObserver:
    def __init__(self, progress: Progress, task: Any) -> None:
        self.progress = progress
        self.task = task

    def on_iteration(self, report: IterationReport) -> None:
        phase = "sampling" if report.accumulating else "burn-in"
        self.progress.update(
            self.task,
            advance=1,
            description=f"StEM {phase} ({report.mean_links:.0f} links)",
        )

    def on_finish(self, result: StEMResult) -> None:
        return None

    def close(self) -> None:
        return None


@app.command("fit")
def fit_command(
    file_a: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV of source A"),
    file_b: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV of source B"),
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False, help="YAML configuration"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the link posterior to this CSV"),
    threshold: float = typer.Option(0.5, "--threshold", "-t", min=0.0, max=1.0, help="Posterior probability needed to link"),
    truth: Path = typer.Option(None, "--truth", exists=True, dir_okay=False, help="CSV of true links to score against"),
    save_iterations: Path = typer.Option(None, "--save-iterations", help="Directory for per-iteration diagnostics"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Override the configured seed"),
    auto_fix: bool = typer.Option(False, "--auto-fix", help="Fix non-identifiable mistake rates to 0"),
    show: int = typer.Option(20, "--show", help="Linked pairs to print"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
):
    """Link two CSV sources."""
    _set_log_level(log_level)
    try:
        settings, run, time_column = load_config(config)
        if seed is not None:
            run["seed"] = seed
        run_config = RunConfig.model_validate(run)
        data = load_data(file_a, file_b, settings, time_column, auto_fix=auto_fix)
    except (FlexLinkError, ValidationError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold]A:[/bold] {data.n_a} records   [bold]B:[/bold] {data.n_b} records   "
        f"[bold]PIVs:[/bold] {', '.join(data.schema.names)}",
        title="flexlink",
    ))

    observers: list[Any] = [ParameterLogger()]
    if save_iterations:
        observers.append(IterationWriter(save_iterations))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
    ) as progress:
        task = progress.add_task("StEM burn-in", total=run_config.stem_iter)
        driver = StEM(
            data,
            run_config,
            observers=[_ProgressObserver(progress, task), *observers],
            auto_fix=auto_fix,
        )
        try:
            result = driver.run()
        except FlexLinkError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            raise typer.Exit(1)

    _display_links(result, threshold, show)
    _display_parameters(result)

    if truth:
        true_links = pd.read_csv(truth)
        metrics = evaluate_links(result.links(threshold), true_links)
        _display_metrics(metrics.summary())

    if output:
        result.delta.to_csv(output, index=False)
        console.print(f"[green]Link posterior saved to {output}[/green]")


@app.command()
def simulate(
    out_dir: Path = typer.Argument(..., file_okay=False, help="Directory for a.csv, b.csv, truth.csv and config.yaml"),
    n_a: int = typer.Option(500, "--n-a", min=1, help="Records in source A"),
    n_b: int = typer.Option(800, "--n-b", min=1, help="Records in source B"),
    n_links: int = typer.Option(300, "--n-links", min=0, help="Entities present in both sources"),
    cardinalities: str = typer.Option("10,12,15,20,25", "--cardinalities", help="Comma-separated PIV cardinalities"),
    unstable: Optional[str] = typer.Option(None, "--unstable", help="Comma-separated 0/1 flags, one per PIV"),
    mistakes: float = typer.Option(0.02, "--mistakes", help="Mistake rate in both sources"),
    missing: float = typer.Option(0.01, "--missing", help="Missing rate in both sources"),
    change_rate: str = typer.Option(
        "0.28", "--change-rate", help="Change hazard per time unit; one value, or comma-separated per unstable PIV"
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
):
    """Write a synthetic linkage problem with known true links."""
    try:
        rates = [float(r) for r in change_rate.split(",")]
        sim_config = SyntheticConfig(
            cardinalities=[int(k) for k in cardinalities.split(",")],
            unstable=[bool(int(f)) for f in unstable.split(",")] if unstable else None,
            n_a=n_a,
            n_b=n_b,
            n_links=n_links,
            mistakes=(mistakes, mistakes),
            missing=(missing, missing),
            change_rate=rates[0] if len(rates) == 1 else rates,
            seed=seed,
        )
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    sim = generate(sim_config)
    paths = sim.to_csv(out_dir)
    config_path = out_dir / "config.yaml"
    mapping = sim.config_mapping()
    mapping["run"] = {"seed": seed} if seed is not None else {}
    with open(config_path, "w", encoding="utf-8") as fh:
        yaml.safe_dump(mapping, fh, sort_keys=False)

    table = Table(title="Synthetic data")
    table.add_column("File", style="cyan")
    table.add_column("Rows", justify="right")
    table.add_row(str(paths["a"]), str(len(sim.frame_a)))
    table.add_row(str(paths["b"]), str(len(sim.frame_b)))
    table.add_row(str(paths["truth"]), str(len(sim.true_links)))
    table.add_row(str(config_path), "")
    console.print(table)


def _display_links(result: StEMResult, threshold: float, show: int):
    """Display the most probable links."""
    links = result.links(threshold).sort_values("proba_link", ascending=False)
    title = f"Links (p > {threshold}, {len(links)} pairs, {result.n_draws} draws)"
    if result.partial:
        title += " [yellow]partial[/yellow]"
    table = Table(title=title)
    table.add_column("A", style="cyan")
    table.add_column("B", style="cyan")
    table.add_column("Probability", justify="right")
    for _, row in links.head(show).iterrows():
        table.add_row(str(row["id_a"]), str(row["id_b"]), f"{row['proba_link']:.3f}")
    console.print(table)


def _display_parameters(result: StEMResult):
    """Display the parameter point estimates."""
    estimate = result.point_estimate()
    table = Table(title="Parameter estimates")
    table.add_column("PIV", style="cyan")
    table.add_column("Kind")
    table.add_column("Missing A/B", justify="right")
    table.add_column("Mistakes A/B", justify="right")
    table.add_column("P(change), 1 time unit", justify="right")
    for j, piv in enumerate(result.schema.pivs):
        change = (
            f"{estimate.change_probability(j):.3f}" if isinstance(piv, UnstablePIV) else "-"
        )
        table.add_row(
            piv.name,
            piv.kind,
            f"{estimate.eta[j, 0]:.3f} / {estimate.eta[j, 1]:.3f}",
            f"{estimate.phi[j, 0]:.3f} / {estimate.phi[j, 1]:.3f}",
            change,
        )
    console.print(table)


def _display_metrics(summary: dict[str, float]):
    table = Table(title="Against true links")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in summary.items():
        table.add_row(name, f"{value:.3f}" if isinstance(value, float) else str(value))
    console.print(table)


if __name__ == "__main__":
    app()
