from updown_arb.main import main

raise SystemExit(main())
