"""
symreg CLI entry point

Provides subcommand routing:
  symreg register - Symmetric linear registration of two images
  symreg plot     - Convergence plot of a gradient-descent log stream
  symreg presets  - List configuration presets
"""

import sys
import argparse


USAGE = """\
usage: symreg [-h] [--version] {register,plot,presets} ...

SYMREG - Symmetric multi-resolution linear (rigid/affine) image registration

subcommands:
  register     Register two 3-D images
  plot         Plot convergence from a gradient-descent log stream
  presets      List available configuration presets

examples:
  symreg register moving.nii.gz fixed.nii.gz -o transform.txt
  symreg register a.nii.gz b.nii.gz --type affine --preset fast --log-stream gd.log
  symreg plot gd.log -o convergence.png
  symreg presets
"""

COMMANDS = {"register", "plot", "presets"}


def plot_main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="symreg plot",
        description="Plot cost per level from a gradient-descent log stream",
    )
    parser.add_argument("log", type=str, help="Log stream written by 'symreg register --log-stream'")
    parser.add_argument("--output", "-o", type=str, required=True, help="Output PNG")
    parser.add_argument("--title", type=str, default="Multi-Level Convergence", help="Figure title")
    args = parser.parse_args(argv)

    from .utils.logging_config import setup_logging, get_logger
    from .visualization import read_gradient_descent_log, plot_multi_level_convergence

    setup_logging("INFO")
    logger = get_logger("cli")
    try:
        history = read_gradient_descent_log(args.log)
        plot_multi_level_convergence(history, output_path=args.output, title=args.title)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Plot failed: {e}")
        return 1
    return 0


def presets_main(argv=None) -> int:
    argparse.ArgumentParser(prog="symreg presets", description="List configuration presets").parse_args(argv)

    from .config import list_available_presets

    for name in list_available_presets():
        print(name)
    return 0


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(USAGE)
        sys.exit(0)

    if sys.argv[1] in ("-V", "--version"):
        from . import __version__
        print(f"symreg {__version__}")
        sys.exit(0)

    command = sys.argv[1]
    if command not in COMMANDS:
        print(f"symreg: unknown command '{command}'")
        print(USAGE)
        sys.exit(1)

    argv = sys.argv[2:]

    if command == "register":
        from .main import main as register_main
        sys.exit(register_main(argv) or 0)

    elif command == "plot":
        sys.exit(plot_main(argv))

    elif command == "presets":
        sys.exit(presets_main(argv))


if __name__ == "__main__":
    main()
