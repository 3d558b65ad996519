from conductor.core.cli import main

if __name__ == "__main__":  # pragma: no cover - module entry point
    main()
