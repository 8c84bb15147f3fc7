"""Allow `python -m mcp_mailbox` to run the CLI."""

from typer.main import get_command

from .cli import app


def main() -> None:
    cmd = get_command(app)
    cmd.main(prog_name="mcp-mailbox")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
