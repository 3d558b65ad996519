"""conductor command-line surface.

``cli.py`` holds the click commands, ``config.py`` finds and validates
conductor.yml. The orchestration engine itself lives in ``conductor.stack``.
"""
