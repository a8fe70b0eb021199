from termhost.cli import main

main()
