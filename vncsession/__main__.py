from vncsession.main import main

main()
