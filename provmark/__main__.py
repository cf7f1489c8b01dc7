from .watermarking import main

raise SystemExit(main())
