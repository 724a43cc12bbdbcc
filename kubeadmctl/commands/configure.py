import typer
from pathlib import Path
from typing import Optional
from rich.console import Console

from ..modules.kubeadm.configure import create_config_file, show_config, validate_config_file

app = typer.Typer(help="Manage the installer configuration file")
console = Console()


@app.command("create")
def config_create(
    output: Optional[Path] = typer.Option(None, '--output', '-o', help='Where to write the file'),
    overwrite: bool = typer.Option(False, '--overwrite', help='Replace an existing file'),
):
    """Write a configuration file populated with default values."""
    try:
        path = create_config_file(output, overwrite=overwrite)
    except FileExistsError as e:
        console.print(f"[red]❌ {e} (use --overwrite to replace it)[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✅ Created configuration file: {path}[/green]")


@app.command("validate")
def config_validate(
    path: Path = typer.Argument(..., help='Configuration file to check'),
):
    """Check a configuration file for errors and risky settings."""
    result = validate_config_file(path)
    for warning in result['warnings']:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")
    if not result['valid']:
        for error in result['errors']:
            console.print(f"[red]❌ {error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✅ {result['path']} is valid[/green]")


@app.command("show")
def config_show(
    path: Optional[Path] = typer.Option(None, '--config', '-c', help='Configuration file to load'),
):
    """Print the effective configuration."""
    console.print(show_config(path), markup=False, highlight=False)
