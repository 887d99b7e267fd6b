import sys

from wgpu_gpt.cli import main

sys.exit(main())
