from pathlib import Path
from typing import Optional

import typer

from cli import state
from cli.backup import backup
from cli.maintenance import prune_safety, schedule
from cli.restore import restore
from config import CONFIG_FILE_ENV

app = typer.Typer(
    help="Moodle + Koha backup and restore to S3-compatible storage.",
    no_args_is_help=True,
)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", envvar=CONFIG_FILE_ENV, help="Settings file (JSON)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    state["config_file"] = config
    state["verbose"] = verbose


app.command("backup")(backup)
app.command("restore")(restore)
app.command("schedule")(schedule)
app.command("prune-safety")(prune_safety)


if __name__ == "__main__":
    app()
