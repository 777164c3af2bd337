from near_sandbox.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
