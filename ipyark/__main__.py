import argparse
import sys
from pathlib import Path

from jupyter_client.kernelspec import install_kernel_spec

from .kernel import run_kernel


def _run_kernel_from_cli(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="ipyark")
    parser.add_argument("-f", "--connection-file", required=True)
    args = parser.parse_args(argv)
    return run_kernel(args.connection_file)


def _install_kernelspec(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="ipyark install")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--user", action="store_true", help="Install into user Jupyter dir")
    scope.add_argument("--sys-prefix", action="store_true", help="Install into current env")
    scope.add_argument("--prefix", help="Install into a given prefix")
    args = parser.parse_args(argv)

    if args.prefix:
        prefix = args.prefix
    elif args.sys_prefix:
        prefix = sys.prefix
    else:
        prefix = None

    kernel_dir = Path(__file__).resolve().parents[1] / "share" / "jupyter" / "kernels" / "ipyark"
    dest = install_kernel_spec(str(kernel_dir), kernel_name="ipyark", user=bool(args.user), prefix=prefix, replace=True)
    print(f"Installed kernelspec ipyark in {dest}")
    return 0


def main() -> None:
    argv = sys.argv[1:]
    if argv and argv[0] == "install":
        sys.exit(_install_kernelspec(argv[1:]))
    if argv and argv[0] == "run":
        argv = argv[1:]
    sys.exit(_run_kernel_from_cli(argv))


if __name__ == "__main__":
    main()
