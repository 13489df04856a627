from .orchestrator_entrypoint import main

raise SystemExit(main())
