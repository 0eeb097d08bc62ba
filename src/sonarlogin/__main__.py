"""Allow ``python -m sonarlogin``."""

from sonarlogin.app import main

main()
