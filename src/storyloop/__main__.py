from storyloop.cli import main

raise SystemExit(main())
