from pgcrond.cli import main

raise SystemExit(main())
