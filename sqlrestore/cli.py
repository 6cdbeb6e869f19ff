import sys
import subprocess


COMMANDS = {
    "import": "sqlrestore.restore",
    "discover": "sqlrestore.discover",
    "plan": "sqlrestore.plan",
}


def _print_usage() -> None:
    print(
        "\n".join(
            [
                "usage:",
                "  sqlrestore <command> [args]",
                "  sqlrestore help <command>",
                "  sqlrestore -h | --help",
                "",
                "commands:",
                "  import    Execute an export tree against a target database",
                "  discover  List encryption secrets the export needs (no connection)",
                "  plan      Show the stage ordered execution plan without running it",
            ]
        )
    )


def main() -> int:
    argv = sys.argv[1:]
    if argv[:1] == ["help"] and len(argv) == 2:
        # `sqlrestore help <cmd>` shows the command's own help
        argv = [argv[1], "-h"]
    if not argv or argv[0] in {"-h", "--help", "help"}:
        _print_usage()
        return 0

    cmd, args = argv[0], argv[1:]
    if cmd not in COMMANDS:
        print(f"Unknown command: {cmd}\n")
        _print_usage()
        return 2

    return subprocess.run([sys.executable, "-m", COMMANDS[cmd], *args]).returncode


if __name__ == "__main__":
    raise SystemExit(main())
