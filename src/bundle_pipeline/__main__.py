"""Allow ``python -m bundle_pipeline``."""

from bundle_pipeline.cli.main import main

if __name__ == "__main__":
    main()
