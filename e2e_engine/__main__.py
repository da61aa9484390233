from e2e_engine.cli import main

raise SystemExit(main())
