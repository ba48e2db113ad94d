from cadence.main import main

main()
