from bearbridge.cli import main

raise SystemExit(main())
