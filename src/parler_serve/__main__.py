from parler_serve.cli import main

raise SystemExit(main())
