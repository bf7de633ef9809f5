from downtown.cli import main

main()
