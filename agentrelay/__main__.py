from agentrelay.app import main

main()
