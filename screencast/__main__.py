from screencast.cli import main

main()
