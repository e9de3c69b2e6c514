"""Entry point for `python -m cloudfiles`."""

from cloudfiles.cli.app import app


def main() -> None:
    """Invoke the CLI application."""

    app()


if __name__ == "__main__":
    main()
