def main() -> None:
    """Entry point for the Refinery CLI."""
    from refinery.ui.cli import cli

    cli()
