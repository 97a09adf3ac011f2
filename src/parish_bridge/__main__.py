from parish_bridge.cli.main import main

main()
