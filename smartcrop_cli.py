#!/usr/bin/env python3
"""Command line interface for smartcrop.

Usage: smartcrop [OPTION] FILE [OUTPUT]

- Without OUTPUT: print the crop report (JSON) to stdout.
- With OUTPUT and --width/--height: render the crop to OUTPUT ('-' = stdout).
"""

from __future__ import annotations

import asyncio
import sys
import traceback
from typing import Sequence

from smartcrop_errors import log_err
from smartcrop_options import build_config, parse_args
from smartcrop_pipeline import run_pipeline


def main(argv: Sequence[str] | None = None) -> int:
    args, forwarded = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = build_config(args, forwarded)
        asyncio.run(run_pipeline(config, args.input, args.output))
        return 0
    except Exception as err:  # noqa: BLE001
        log_err(f"smartcrop failed: {err}")
        traceback.print_exc(file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
