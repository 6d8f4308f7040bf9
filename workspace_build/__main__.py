from workspace_build.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
