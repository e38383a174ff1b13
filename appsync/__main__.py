from appsync.cli import main

main()
