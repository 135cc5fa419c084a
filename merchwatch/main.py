"""Console entry point."""

from merchwatch.cli import entrypoint


def main() -> None:
    entrypoint()


if __name__ == "__main__":
    main()
