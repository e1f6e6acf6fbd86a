from zkstate.cli import main

raise SystemExit(main())
