from .station import main

raise SystemExit(main())
