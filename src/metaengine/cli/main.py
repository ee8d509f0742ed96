"""CLI application using Typer for the meta-analysis engine."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..config.settings import settings
from ..meta.service import handle_request
from ..utils.logging import get_logger
from metaengine.web.app import start_server as _start_web_server

app = typer.Typer(
    name="metaengine",
    help="Meta-analysis engine - pooling, heterogeneity, bias, subgroup, sensitivity and meta-regression",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read study records from a CSV or JSON (list of objects) file.

    JSON values keep their literal types; CSV ``study_id`` is read as
    text so zero-padded identifiers survive.
    """
    if path.suffix.lower() == ".json":
        records = json.loads(path.read_text())
        if not isinstance(records, list):
            raise typer.BadParameter(f"{path} must hold a JSON list of study objects")
        return records
    df = pd.read_csv(path, dtype={"study_id": str})
    return df.to_dict(orient="records")


def _fmt(value: Any, digits: int = 4) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def _p(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return "<0.0001" if value < 1e-4 else f"{value:.4f}"


def _run(
    operation: str,
    input_file: Path,
    parameters: Dict[str, Any],
    output: Optional[Path],
) -> Dict[str, Any]:
    """Dispatch a request, report failures and optionally save the results."""
    records = load_records(input_file)
    console.print(f"Loaded {len(records)} studies from {input_file}")
    response = handle_request({"operation": operation, "studies": records, "parameters": parameters})
    if not response.success:
        error = response.error
        console.print(f"[red]Error ({error.kind}): {error.message}[/red]")
        raise typer.Exit(1)
    if output is not None:
        output.write_text(json.dumps(response.results, indent=2))
        console.print(f"[green]✓ Results saved to {output}[/green]")
    return response.results


def _issue(label: str, block: Dict[str, Any]) -> bool:
    """Print a sub-analysis issue; return True when ``block`` is one."""
    if "kind" in block and "message" in block:
        console.print(f"[yellow]{label}: {block['message']} ({block['kind']})[/yellow]")
        return True
    return False


def _print_pooled(result: Dict[str, Any], title: str = "Pooled estimate") -> None:
    table = Table(title=title)
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", justify="right")
    method = f"/{result['method']}" if result.get("method") else ""
    table.add_row("Model", f"{result['model_type']}{method}")
    table.add_row("Effect measure", result["effect_measure"])
    table.add_row("Studies (k)", str(result["k"]))
    table.add_row("Estimate", _fmt(result["estimate"]))
    table.add_row("95% CI", f"[{_fmt(result['ci_lower'])}, {_fmt(result['ci_upper'])}]")
    table.add_row("p-value", _p(result["p_value"]))
    if result.get("prediction_interval"):
        pi = result["prediction_interval"]
        table.add_row("95% PI", f"[{_fmt(pi['lower'])}, {_fmt(pi['upper'])}]")
    table.add_row("tau²", _fmt(result["tau_squared"]))
    het = result["heterogeneity"]
    if het["applicable"]:
        table.add_row("Q (df)", f"{_fmt(het['q_statistic'], 3)} ({het['q_df']})")
        table.add_row("I²", f"{_fmt(het['i_squared'], 1)}%")
    table.add_row("Heterogeneity", het["interpretation"])
    console.print(table)


def _print_heterogeneity(result: Dict[str, Any]) -> None:
    table = Table(title="Heterogeneity")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Q", _fmt(result["q_statistic"], 3))
    table.add_row("df", str(result["q_df"]))
    table.add_row("p-value", _p(result["q_pvalue"]))
    table.add_row("I²", _fmt(result["i_squared"], 1))
    table.add_row("H²", _fmt(result["h_squared"], 3))
    table.add_row("tau²", _fmt(result["tau_squared"]))
    table.add_row("Interpretation", result["interpretation"])
    console.print(table)


def _print_regression(result: Dict[str, Any]) -> None:
    table = Table(title=f"Meta-regression (k={result['k']})")
    for column in ("Term", "Estimate", "SE", "z", "p", "95% CI"):
        table.add_column(column, justify="right" if column != "Term" else "left")
    for coef in result["coefficients"]:
        table.add_row(
            escape(coef["name"]),
            _fmt(coef["estimate"]),
            _fmt(coef["se"]),
            _fmt(coef["z_value"], 3),
            _p(coef["p_value"]),
            f"[{_fmt(coef['ci_lower'])}, {_fmt(coef['ci_upper'])}]",
        )
    console.print(table)
    qm = result["q_model"]
    console.print(
        f"Q_model = {qm['statistic']:.3f} (df={qm['df']}, p={_p(qm['p_value'])}), "
        f"R² = {_fmt(result['r_squared'], 3)}, residual tau² = {result['tau_squared']:.4f}"
    )
    if result["excluded_study_ids"]:
        console.print(f"[yellow]Excluded (missing moderators): {', '.join(result['excluded_study_ids'])}[/yellow]")


def _parameters(model: str, measure: str, method: Optional[str], **extra: Any) -> Dict[str, Any]:
    params: Dict[str, Any] = {"model_type": model.upper(), "effect_measure": measure.upper()}
    if method:
        params["method"] = method.upper()
    params.update({key: value for key, value in extra.items() if value is not None})
    return params


INPUT = typer.Argument(..., help="CSV or JSON file with one study per row", exists=True)
MEASURE = typer.Option(settings.default_effect_measure, "--measure", "-e", help="Effect measure: OR, RR, SMD, MD, COR")
MODEL = typer.Option(settings.default_model_type, "--model", "-m", help="Model type: FE or RE")
METHOD = typer.Option(None, "--method", help="tau² estimator: DL, REML, PM, ML")
OUTPUT = typer.Option(None, "--output", "-o", help="Write the JSON results to this file")


@app.command()
def analyze(
    input_file: Path = INPUT,
    measure: str = MEASURE,
    model: str = MODEL,
    method: Optional[str] = METHOD,
    moderators: Optional[str] = typer.Option(None, "--moderators", help="Comma-separated moderators for meta-regression"),
    output: Optional[Path] = OUTPUT,
) -> None:
    """Pool the studies and print the combined estimate.

    With ``--moderators`` a meta-regression is run alongside.
    """
    console.print("[bold blue]Running meta‑analysis[/bold blue]")
    mods = [m.strip() for m in moderators.split(",") if m.strip()] if moderators else None
    results = _run("run_analysis", input_file, _parameters(model, measure, method, moderators=mods), output)
    _print_pooled(results)
    if "meta_regression" in results and not _issue("Meta-regression", results["meta_regression"]):
        _print_regression(results["meta_regression"])


@app.command()
def heterogeneity(
    input_file: Path = INPUT,
    measure: str = MEASURE,
    output: Optional[Path] = OUTPUT,
) -> None:
    """Compute Cochran's Q, I², H² and tau²."""
    results = _run("heterogeneity", input_file, _parameters("FE", measure, None), output)
    _print_heterogeneity(results)


@app.command()
def bias(
    input_file: Path = INPUT,
    measure: str = MEASURE,
    model: str = MODEL,
    method: Optional[str] = METHOD,
    begg: str = typer.Option("spearman", "--begg", help="Rank correlation for Begg's test: spearman or kendall"),
    output: Optional[Path] = OUTPUT,
) -> None:
    """Run Egger's and Begg's tests, trim-and-fill and fail-safe N."""
    console.print("[bold magenta]Assessing publication bias[/bold magenta]")
    results = _run(
        "publication_bias", input_file, _parameters(model, measure, method, begg_correlation=begg), output
    )
    egger = results["egger_test"]
    if not _issue("Egger's test", egger):
        console.print(
            f"Egger: intercept={egger['intercept']:.4f} (se {egger['se']:.4f}), "
            f"t={egger['t_value']:.3f}, p={_p(egger['p_value'])} - {egger['interpretation']}"
        )
    begg_result = results["begg_test"]
    if not _issue("Begg's test", begg_result):
        console.print(
            f"Begg ({begg_result['correlation']}): r={begg_result['rank_correlation']:.4f}, "
            f"p={_p(begg_result['p_value'])}"
        )
    tf = results["trim_and_fill"]
    if not _issue("Trim-and-fill", tf):
        console.print(
            f"Trim-and-fill: {tf['message']}; adjusted estimate {tf['adjusted_estimate']:.4f} "
            f"[{tf['adjusted_ci']['lower']:.4f}, {tf['adjusted_ci']['upper']:.4f}]"
        )
    fsn = results["fail_safe_n"]
    if not _issue("Fail-safe N", fsn):
        console.print(f"Fail-safe N: Rosenthal={fsn['rosenthal']}, Orwin={_fmt(fsn['orwin'])}")


@app.command()
def subgroup(
    input_file: Path = INPUT,
    by: str = typer.Option(..., "--by", help="Moderator defining the subgroups"),
    measure: str = MEASURE,
    model: str = MODEL,
    method: Optional[str] = METHOD,
    output: Optional[Path] = OUTPUT,
) -> None:
    """Pool each subgroup and test for differences between them."""
    results = _run("subgroup_analysis", input_file, _parameters(model, measure, method, subgroup_var=by), output)
    table = Table(title=f"Subgroups by {results['moderator']}")
    for column in ("Group", "k", "Estimate", "95% CI", "I²"):
        table.add_column(column)
    for group in results["subgroups"]:
        pooled = group["result"]
        table.add_row(
            escape(group["name"]),
            str(group["k"]),
            _fmt(pooled["estimate"]),
            f"[{_fmt(pooled['ci_lower'])}, {_fmt(pooled['ci_upper'])}]",
            _fmt(pooled["heterogeneity"]["i_squared"], 1),
        )
    console.print(table)
    between = results["between_group"]
    if not _issue("Between-group test", between):
        console.print(
            f"Q_between = {between['q_between']:.3f} (df={between['df']}, p={_p(between['p_value'])})"
        )


@app.command()
def sensitivity(
    input_file: Path = INPUT,
    sort_by: str = typer.Option("year", "--sort-by", help="Ordering for cumulative pooling"),
    measure: str = MEASURE,
    model: str = MODEL,
    method: Optional[str] = METHOD,
    output: Optional[Path] = OUTPUT,
) -> None:
    """Leave-one-out, cumulative and influence analyses."""
    results = _run("sensitivity_analysis", input_file, _parameters(model, measure, method, sort_by=sort_by), output)
    _print_pooled(results["baseline"], title="Baseline")
    loo = results["leave_one_out"]
    if not _issue("Leave-one-out", loo):
        table = Table(title="Leave-one-out")
        for column in ("Omitted", "Estimate", "95% CI", "Change %"):
            table.add_column(column)
        for entry in loo["entries"]:
            table.add_row(
                entry["study_label"],
                _fmt(entry["estimate"]),
                f"[{_fmt(entry['ci_lower'])}, {_fmt(entry['ci_upper'])}]",
                _fmt(entry["percent_change"], 1),
            )
        console.print(table)
    infl = results["influence"]
    if not _issue("Influence", infl):
        flagged = [e["study_label"] for e in infl["entries"] if e["influential"]]
        console.print(f"Influential studies: {', '.join(flagged) if flagged else 'none'}")


@app.command()
def regress(
    input_file: Path = INPUT,
    moderators: str = typer.Option(..., "--moderators", help="Comma-separated moderator names"),
    measure: str = MEASURE,
    model: str = MODEL,
    method: Optional[str] = METHOD,
    output: Optional[Path] = OUTPUT,
) -> None:
    """Meta-regression of effect size on one or more moderators."""
    mods = [m.strip() for m in moderators.split(",") if m.strip()]
    results = _run("meta_regression", input_file, _parameters(model, measure, method, moderators=mods), output)
    _print_regression(results)


@app.command()
def serve(
    host: str = typer.Option(
        settings.host,
        "--host",
        help="Hostname to bind the web server to.",
    ),
    port: int = typer.Option(
        settings.port,
        "--port",
        help="Port for the web server.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload/--no-reload",
        help="Enable auto-reload (development only).",
    ),
) -> None:
    """Start the HTTP API."""
    console.print(f"[bold blue]Starting web server[/bold blue] at http://{host}:{port}")
    _start_web_server(host=host, port=port, reload=reload)


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__
    console.print(f"Meta-Analysis Engine v{__version__}")


if __name__ == "__main__":
    app()
