from netaccess.cli import main

raise SystemExit(main())
