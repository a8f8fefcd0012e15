from uzi.cli import main

main()
