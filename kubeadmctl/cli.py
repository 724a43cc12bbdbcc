import logging
import sys

import typer

from kubeadmctl.commands import configure, deploy, status, validate
from kubeadmctl.logging import configure_logging

app = typer.Typer(help="kubeadmctl - bootstrap kubeadm clusters over SSH.")

# Global debug flag
debug_mode = False

# Add all command groups
app.add_typer(deploy.app, name="deploy")
app.add_typer(validate.app, name="validate")
app.add_typer(status.app, name="status")
app.add_typer(configure.app, name="config")


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """kubeadmctl - Kubernetes cluster bootstrap CLI."""
    global debug_mode
    debug_mode = debug
    ctx.obj = {'debug': debug}
    configure_logging(debug)
    if debug:
        logging.debug("Debug mode enabled")


def run() -> None:
    try:
        app()
    except Exception as e:
        if debug_mode:
            logging.exception(f"Unhandled exception: {e}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
