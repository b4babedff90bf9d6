from pricefusion.main import run

run()
