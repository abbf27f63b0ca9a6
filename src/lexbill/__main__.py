"""Allow ``python -m lexbill``."""

from .cli import main

main()
