from relay.worker.main import main

main()
