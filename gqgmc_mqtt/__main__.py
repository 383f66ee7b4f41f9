from gqgmc_mqtt.main import main

main()
