from .queue_worker import main

main()
