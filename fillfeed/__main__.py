"""Allow running as: python -m fillfeed"""

from fillfeed.main import main

main()
