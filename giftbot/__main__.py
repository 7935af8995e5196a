from giftbot.bot import main

main()
