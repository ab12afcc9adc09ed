"""
taxadiff CLI - differential abundance of amplicon features between two groups.

Commands:
    taxadiff differential  - Negative-binomial Wald test of one contrast
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for taxadiff."""
    from taxadiff import __version__

    parser = argparse.ArgumentParser(
        prog="taxadiff",
        description="Differential abundance analysis for amplicon sequencing data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  differential  Negative-binomial Wald test of one contrast

Examples:
  taxadiff differential --config analysis.yaml
  taxadiff differential --feature-table table.biom --taxonomy taxonomy.tsv \\
      --metadata metadata.tsv --contrast Description Rhizosphere Bulk --output results/
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from taxadiff.cli import differential
    differential.setup_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Dispatch to subcommand
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
